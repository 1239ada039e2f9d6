#!/usr/bin/env python
"""
测试运行脚本

用法: python run_tests.py [命令] [额外的 pytest 参数...]

例如:
  python run_tests.py unit -k instance_manager
  python run_tests.py slow          # 需要本地回环 WebSocket 的桥接测试
"""
import sys
import subprocess


# 命令 -> (pytest 参数, 说明)
COMMANDS = {
    "all": (["tests/", "-v"], "运行所有测试"),
    "unit": (["tests/unit/", "-v"], "运行单元测试"),
    "integration": (["tests/integration/", "-v"], "运行 HTTP 集成测试"),
    "fast": (["tests/", "-m", "not slow", "-v"], "运行快速测试（跳过桥接测试）"),
    "slow": (["tests/", "-m", "slow", "-v"], "只运行桥接测试"),
    "lifecycle": (
        ["tests/unit/test_instance_manager.py", "tests/unit/test_instance_components.py", "-v"],
        "运行实例生命周期测试"
    ),
    "cov": (
        ["--cov=wa_gateway", "--cov-report=html", "--cov-report=term-missing", "tests/"],
        "生成测试覆盖率报告"
    ),
}


def run_command(cmd, description):
    """运行命令并显示结果"""
    print(f"\n{'='*60}")
    print(f"🧪 {description}")
    print(f"{'='*60}")
    print(f"命令: {' '.join(cmd)}\n")

    result = subprocess.run(cmd)

    if result.returncode == 0:
        print(f"\n✅ {description} - 成功")
    else:
        print(f"\n❌ {description} - 失败")

    return result.returncode == 0


def print_usage():
    print("\n可用命令:")
    for name, (_, description) in COMMANDS.items():
        print(f"  {name:<12} - {description}")


def main():
    """主函数"""
    command = sys.argv[1] if len(sys.argv) > 1 else "all"
    extra_args = sys.argv[2:]

    if command not in COMMANDS:
        print(f"❌ 未知命令: {command}")
        print_usage()
        sys.exit(1)

    pytest_args, description = COMMANDS[command]
    success = run_command([sys.executable, "-m", "pytest", *pytest_args, *extra_args], description)

    if success and command == "cov":
        print("\n📊 覆盖率报告已生成: htmlcov/index.html")

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
