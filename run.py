"""
启动入口：为 sqldiag.cli 加一层简单包装，便于直接运行。

使用方式：
  python3 run.py quick
  python3 run.py full --categories connection,server --format markdown --output report.md
  python3 run.py triage
  python3 run.py baseline-capture --name prod-morning

配置：
- 默认从当前目录的 sqldiag.ini 读取；也可以设置环境变量 SQLDIAG_CONFIG 指向其他路径。
- 不要把带密码的连接串提交到仓库，用 SQLDIAG_CONNECTION_STRING 或 --connection 传入。
"""

import os
import sys

from sqldiag.cli import main as cli_main


def _inject_config(args):
    if "--config" in args:
        return args
    config_path = os.environ.get("SQLDIAG_CONFIG", "sqldiag.ini")
    return ["--config", config_path] + args


if __name__ == "__main__":
    sys.exit(cli_main(_inject_config(sys.argv[1:])))
