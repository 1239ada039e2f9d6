"""
收件人地址规范化
"""

from wa_gateway.exceptions import ValidationError


def normalize_address(number: str, domain: str = "s.whatsapp.net") -> str:
    """把号码转换为协议地址

    已经带 @ 的地址（包括群组等其他域名）原样返回，
    否则去掉空白和开头的 +，并追加 @domain。

    Args:
        number: 号码或完整地址
        domain: 地址域名

    Returns:
        str: 协议地址，如 1555@s.whatsapp.net

    Raises:
        ValidationError: 号码为空
    """
    if number is None:
        raise ValidationError("number is required")

    value = str(number).strip()
    if "@" in value:
        return value

    value = value.replace(" ", "").lstrip("+")
    if not value:
        raise ValidationError("number is required")

    return f"{value}@{domain}"
