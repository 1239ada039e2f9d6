"""
主程序入口

WA Instance Gateway - 多实例消息网关
"""

import sys
import signal
import argparse
import logging
import platform
import concurrent.futures

from wa_gateway.api.http_server import GatewayHttpServer
from wa_gateway.api.loop_runner import EventLoopThread
from wa_gateway.config.config_parser import ConfigParser, ConfigData
from wa_gateway.instance.instance_manager import InstanceManager
from wa_gateway.instance.reconnect_policy import ReconnectPolicy
from wa_gateway.messaging.dispatcher import MessageDispatcher
from wa_gateway.messaging.media_fetcher import MediaFetcher
from wa_gateway.protocol.auth_state import MultiFileAuthState
from wa_gateway.protocol.bridge_client import BridgeClientFactory
from wa_gateway.store import create_session_store
from wa_gateway.utils.logger import setup_logger, get_logger


def parse_args() -> argparse.Namespace:
    """解析命令行参数

    Returns:
        argparse.Namespace: 解析后的参数
    """
    parser = argparse.ArgumentParser(
        description="WA Instance Gateway - 多实例消息网关",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 只使用默认值和环境变量（.env）
  python -m wa_gateway.main

  # 指定配置文件
  python -m wa_gateway.main --config config/config.json

  # 覆盖监听地址和日志级别
  python -m wa_gateway.main --host 127.0.0.1 --port 8080 --log-level DEBUG
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="配置文件路径（可选，未指定时只使用默认值和环境变量）"
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="监听地址（覆盖配置文件）"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="监听端口（覆盖配置文件）"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="日志级别（覆盖配置文件）"
    )

    return parser.parse_args()


def load_config(args: argparse.Namespace) -> ConfigData:
    """加载配置并应用命令行覆盖"""
    config = ConfigParser(args.config).parse()

    if args.host:
        config.host = args.host
    if args.port:
        config.server_port = args.port
    if args.log_level:
        config.log_level = args.log_level

    return config


def build_gateway(config: ConfigData, runner: EventLoopThread) -> GatewayHttpServer:
    """创建网关各组件

    Args:
        config: 配置数据对象
        runner: 事件循环线程

    Returns:
        GatewayHttpServer: HTTP 服务器
    """
    store = create_session_store(
        config.store_backend,
        config.store_path,
        get_logger("store")
    )
    auth_state = MultiFileAuthState(config.sessions_dir, get_logger("auth"))

    client_factory = BridgeClientFactory(
        config.bridge_url,
        connect_timeout=config.connect_timeout,
        request_timeout=config.request_timeout,
        logger=get_logger("bridge")
    )

    manager_logger = get_logger("instance")
    manager = InstanceManager(
        store,
        auth_state,
        client_factory,
        qr_expiry=config.qr_expiry,
        reconnect_policy=ReconnectPolicy(
            base_delay=config.reconnect_delay,
            max_delay=config.reconnect_max_delay,
            backoff=config.reconnect_backoff,
            window=config.reconnect_window,
            logger=manager_logger
        ),
        logger=manager_logger
    )

    dispatcher = MessageDispatcher(
        manager,
        MediaFetcher(
            max_size=config.max_fetch_size,
            timeout=config.fetch_timeout,
            logger=get_logger("media")
        ),
        address_domain=config.address_domain,
        logger=get_logger("messaging")
    )

    return GatewayHttpServer(config, manager, dispatcher, runner, get_logger("http"))


def restore_sessions(manager: InstanceManager, runner: EventLoopThread, logger: logging.Logger) -> None:
    """恢复持久化的会话

    超时或失败只记录日志：超时的恢复协程继续在事件循环上运行，
    未恢复的实例可以通过 /start-session 重新启动。
    """
    try:
        restored = runner.run(manager.load_sessions())
        logger.info(f"✅ 已恢复 {restored} 个会话")
    except concurrent.futures.TimeoutError:
        logger.warning("⚠️ 会话恢复超时，剩余实例在后台继续连接")
    except Exception as e:
        logger.error(f"❌ 会话恢复失败: {e}", exc_info=True)


def main():
    """主函数"""

    # 1. 解析命令行参数
    args = parse_args()

    # 2. 加载并验证配置
    try:
        config = load_config(args)
    except Exception as e:
        print(f"❌ 配置加载失败: {e}")
        sys.exit(1)

    # 3. 初始化日志
    logger = setup_logger(config)
    logger.info("=" * 60)
    logger.info("WA Instance Gateway 启动")
    logger.info("=" * 60)

    # 4. 启动事件循环线程
    runner = EventLoopThread(logger=get_logger("loop"))
    runner.start()

    # 5. 创建网关组件
    try:
        server = build_gateway(config, runner)
    except Exception as e:
        logger.error(f"❌ 初始化失败: {e}", exc_info=True)
        runner.stop()
        sys.exit(1)

    # 6. SIGTERM 按 Ctrl+C 同样处理（仅在 Unix 系统上）
    if platform.system() != "Windows":
        signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))

    try:
        # 7. 恢复持久化的会话（失败不影响服务启动）
        restore_sessions(server.manager, runner, logger)

        logger.info("=" * 60)
        logger.info("📡 服务已就绪")
        logger.info(f"🌐 监听地址: http://{config.host}:{config.server_port}")
        logger.info(f"🔌 协议桥接: {config.bridge_url}")
        logger.info(f"🔐 Basic 认证: {'已启用' if config.auth_enabled else '未启用'}")
        logger.info("=" * 60)

        # 8. 运行 HTTP 服务器（阻塞）
        server.run(host=config.host, port=config.server_port)

    except (KeyboardInterrupt, SystemExit):
        logger.info("收到关闭信号，正在优雅退出...")

    except Exception as e:
        logger.error(f"❌ 服务器运行异常: {e}", exc_info=True)
        sys.exit(1)

    finally:
        # 9. 优雅退出：关闭连接，保留会话记录
        try:
            runner.run(server.manager.shutdown(), timeout=10)
        except Exception as e:
            logger.error(f"关闭实例连接失败: {e}")
        runner.stop()
        logger.info("✅ 服务器已关闭")
        logger.info("=" * 60)


if __name__ == "__main__":
    main()
