"""
Flask HTTP 服务器

对外提供实例管理和消息发送接口：
- GET  /start-session   启动实例会话
- GET  /qr              获取配对二维码
- POST /send-message    发送文本消息
- POST /send-file-url   发送远程文件
- POST /send-file       发送上传文件
- GET  /logout          注销实例
- GET  /instances       列出已知实例
- GET  /health          健康检查

请求在 Flask 工作线程中处理，实例操作通过 EventLoopThread 提交到后台事件循环。
"""

import uuid
import logging
import concurrent.futures
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from .basic_auth import check_basic_auth
from .loop_runner import EventLoopThread
from wa_gateway.config.config_parser import ConfigData
from wa_gateway.exceptions import (
    GatewayError,
    ValidationError,
    NotConnectedError,
    UpstreamProtocolError,
    TransientIOError,
)
from wa_gateway.instance.instance_manager import InstanceManager
from wa_gateway.messaging.dispatcher import MessageDispatcher
from wa_gateway.store.session_store import utc_now


# 异常类型 -> (HTTP 状态码, 对外提示；None 表示直接使用异常信息)
ERROR_RESPONSES = {
    ValidationError: (400, None),
    NotConnectedError: (400, "Session not connected"),
    UpstreamProtocolError: (502, "Failed to send message"),
    TransientIOError: (503, "Service temporarily unavailable"),
}

OPEN_PATHS = {"/health"}


class GatewayHttpServer:
    """网关 HTTP 服务器

    职责：
    1. 注册 HTTP 路由
    2. 校验 Basic 认证（如已配置）
    3. 把实例操作提交到事件循环并返回 JSON 结果
    4. 把异常转换为统一格式的错误响应
    """

    def __init__(
        self,
        config: ConfigData,
        manager: InstanceManager,
        dispatcher: MessageDispatcher,
        runner: EventLoopThread,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.manager = manager
        self.dispatcher = dispatcher
        self.runner = runner
        self.logger = logger or logging.getLogger(__name__)

        self.upload_dir = Path(config.upload_dir)

        # 创建 Flask 应用
        self.app = Flask(__name__)
        self.app.config["MAX_CONTENT_LENGTH"] = config.max_upload_size

        self._setup_auth()
        self._setup_routes()
        self._setup_error_handlers()

        self.logger.info("HTTP 服务器已初始化")

    def _setup_auth(self):
        """设置 Basic 认证"""
        if not self.config.auth_enabled:
            self.logger.warning("⚠️ 未配置 Basic 认证，接口对所有人开放")
            return

        @self.app.before_request
        def require_basic_auth():
            if request.path in OPEN_PATHS:
                return None
            return check_basic_auth(
                request,
                self.config.auth_username,
                self.config.auth_password
            )

    def _setup_routes(self):
        """设置路由"""

        @self.app.route("/start-session", methods=["GET"])
        def start_session():
            key = self._instance_key()
            result = self.runner.run(self.manager.start_instance(key))
            return jsonify(result.to_dict()), 200 if result.success else 503

        @self.app.route("/qr", methods=["GET"])
        def get_qr():
            key = self._instance_key()
            result = self.runner.run(self.manager.get_qr(key))
            return jsonify(result.to_dict())

        @self.app.route("/send-message", methods=["POST"])
        def send_message():
            key = self._instance_key()
            data = self._body()
            self.runner.run(self.dispatcher.send_text(
                key,
                data.get("number"),
                data.get("message")
            ))
            return jsonify({"success": True, "message": "Message sent"})

        @self.app.route("/send-file-url", methods=["POST"])
        def send_file_url():
            key = self._instance_key()
            data = self._body()
            self.runner.run(self.dispatcher.send_document_from_url(
                key,
                data.get("number"),
                data.get("fileUrl"),
                caption=data.get("caption"),
                file_name=data.get("fileName")
            ))
            return jsonify({"success": True, "message": "File sent from URL"})

        @self.app.route("/send-file", methods=["POST"])
        def send_file():
            key = self._instance_key()
            upload = request.files.get("file")
            if upload is None or not upload.filename:
                raise ValidationError("file required")

            path = self._save_upload(upload)
            self.runner.run(self.dispatcher.send_document_from_upload(
                key,
                request.form.get("number"),
                str(path),
                upload.mimetype,
                upload.filename,
                caption=request.form.get("caption")
            ))
            return jsonify({"success": True, "message": "File sent from upload"})

        @self.app.route("/logout", methods=["GET"])
        def logout():
            key = self._instance_key()
            result = self.runner.run(self.manager.logout_instance(key))
            return jsonify(result.to_dict()), 200 if result.ok else 500

        @self.app.route("/instances", methods=["GET"])
        def list_instances():
            instances = self.runner.run(self.manager.list_instances())
            return jsonify({
                "success": True,
                "instances": [info.to_dict() for info in instances]
            })

        @self.app.route("/health", methods=["GET"])
        def health():
            return jsonify({
                "status": "ok",
                "timestamp": utc_now().isoformat(),
                "activeSessions": self.manager.get_active_count()
            })

    def _setup_error_handlers(self):
        """设置异常处理"""

        @self.app.errorhandler(GatewayError)
        def handle_gateway_error(e: GatewayError):
            status, message = ERROR_RESPONSES.get(type(e), (500, "Internal server error"))
            if status >= 500:
                self.logger.error(f"❌ 请求失败 {request.path}: {e}")
            else:
                self.logger.info(f"请求被拒绝 {request.path}: {e}")
            return self._error(status, message or str(e), str(e))

        @self.app.errorhandler(concurrent.futures.TimeoutError)
        def handle_timeout(e):
            self.logger.error(f"❌ 请求超时 {request.path}")
            return self._error(504, "Request timed out", "timeout")

        @self.app.errorhandler(HTTPException)
        def handle_http_error(e: HTTPException):
            return self._error(e.code or 500, e.name, e.description)

        @self.app.errorhandler(Exception)
        def handle_unexpected(e: Exception):
            self.logger.error(f"❌ 未处理的异常 {request.path}: {e}", exc_info=True)
            return self._error(500, "Internal server error", str(e))

    @staticmethod
    def _instance_key() -> str:
        key = request.args.get("instanceKey", "").strip()
        if not key:
            raise ValidationError("instanceKey is required")
        return key

    @staticmethod
    def _body() -> Dict[str, Any]:
        """读取 JSON 请求体，非 JSON 请求退回表单字段"""
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    def _save_upload(self, upload) -> Path:
        """把上传文件保存到临时目录

        Returns:
            Path: 保存后的文件路径
        """
        self.upload_dir.mkdir(parents=True, exist_ok=True)

        name = secure_filename(upload.filename) or "upload"
        path = self.upload_dir / f"{uuid.uuid4().hex}-{name}"
        upload.save(str(path))

        self.logger.debug(f"上传文件已保存: {path}")
        return path

    @staticmethod
    def _error(status: int, message: str, error: str):
        return jsonify({"success": False, "message": message, "error": error}), status

    def run(self, host: str = "0.0.0.0", port: int = 3000, debug: bool = False):
        """运行 Flask 服务器（阻塞）"""
        self.logger.info(f"启动 HTTP 服务器，监听 {host}:{port}...")

        self.app.run(
            host=host,
            port=port,
            debug=debug,
            use_reloader=False,
            threaded=True
        )
