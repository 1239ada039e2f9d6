"""
HTTP Basic 认证

配置了用户名时启用；未携带或格式错误的凭据返回 401，凭据错误返回 403
"""

import hmac
from typing import Optional, Tuple

from flask import Request, jsonify

REALM = 'Basic realm="wa-gateway"'


def check_basic_auth(request: Request, username: str, password: str) -> Optional[Tuple]:
    """校验请求的 Basic 认证

    Args:
        request: Flask 请求
        username: 配置的用户名
        password: 配置的密码

    Returns:
        Optional[Tuple]: 认证通过返回 None，否则返回 (响应, 状态码, 头部)
    """
    auth = request.authorization
    if auth is None or auth.type != "basic" or auth.username is None:
        return (
            jsonify({"success": False, "message": "Authentication required"}),
            401,
            {"WWW-Authenticate": REALM}
        )

    user_ok = hmac.compare_digest(auth.username.encode(), username.encode())
    pass_ok = hmac.compare_digest((auth.password or "").encode(), (password or "").encode())
    if not (user_ok and pass_ok):
        return jsonify({"success": False, "message": "Invalid credentials"}), 403, {}

    return None
