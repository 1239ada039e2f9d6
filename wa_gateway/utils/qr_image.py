"""
二维码渲染工具

把协议客户端给出的配对字符串渲染成 PNG data URL
"""

import io
import base64

import qrcode


def render_qr_data_url(code: str, box_size: int = 10, border: int = 4) -> str:
    """渲染二维码为 data URL

    Args:
        code: 配对字符串
        box_size: 每个模块的像素大小
        border: 边框宽度（模块数）

    Returns:
        str: data:image/png;base64,... 格式的字符串
    """
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(code)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")

    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
