"""
upgradef 的命令行入口点，使用 Typer 实现命令行界面

同一台机器上不要同时运行多个 upgradef 实例，本工具不做加锁。
"""
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console

from .config import UpgradeContext, load_context
from .core.orchestrator import ConvergenceOrchestrator
from .errors import FatalPreflightError
from .logger_module import setup_logger
from .system.host import build_host_collaborators
from .system.interfaces import Collaborators, Operator
from .ui.console import ConsoleOperator, render_fatal, render_report

app = typer.Typer(help="Proxmox 8 -> 9 升级准备工具 - 迁移 APT 仓库配置并应用幂等的升级后调整，可重复运行")

console = Console()


def build_collaborators(context: UpgradeContext, operator: Operator) -> Collaborators:
    """组装外部协作组件"""
    if context.root != Path("/"):
        logger.warning(f"仓库文件位于 {context.root} 之下，但 apt/systemctl 仍作用于本机")
    return build_host_collaborators(operator)


@app.command()
def upgrade(
    root: Optional[Path] = typer.Option(None, "--root", help="文件系统根目录 [env: UPGRADEF_ROOT]"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="TOML 配置文件"),
    backup_root: Optional[Path] = typer.Option(None, "--backup-root", help="备份目录所在位置 [env: UPGRADEF_BACKUP_ROOT]"),
    unattended: Optional[bool] = typer.Option(None, "--unattended/--interactive", help="自动确认所有提示 [env: UPGRADEF_UNATTENDED]"),
    modernize: Optional[bool] = typer.Option(None, "--modernize/--keep-format", help="把单行格式的源迁移为 deb822 格式 [env: UPGRADEF_MODERNIZE_SOURCES]"),
    no_subscription: Optional[bool] = typer.Option(None, "--no-subscription/--keep-channels", help="enterprise 仓库切换为 no-subscription [env: UPGRADEF_NO_SUBSCRIPTION]"),
    ui_patches: Optional[bool] = typer.Option(None, "--ui-patches/--no-ui-patches", help="去除订阅提示并安装 APT 钩子 [env: UPGRADEF_UI_PATCHES]"),
    disable_ha: Optional[bool] = typer.Option(None, "--disable-ha/--keep-ha", help="单节点时禁用 HA 与 corosync 服务 [env: UPGRADEF_DISABLE_HA]"),
    dist_upgrade: Optional[bool] = typer.Option(None, "--dist-upgrade/--no-dist-upgrade", help="迁移后执行 apt update 与 dist-upgrade [env: UPGRADEF_DIST_UPGRADE]"),
    require_root: Optional[bool] = typer.Option(None, "--require-root/--no-require-root", help="要求以 root 运行 [env: UPGRADEF_REQUIRE_ROOT]"),
    extra_package: Optional[List[str]] = typer.Option(None, "--extra-package", "-p", help="额外安装的软件包，可多次指定 [env: UPGRADEF_EXTRA_PACKAGES，逗号分隔]"),
    log_root: Optional[Path] = typer.Option(None, "--log-root", help="日志目录，默认为 ~/.upgradef/logs"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="控制台输出调试日志"),
):
    """检查系统状态，把 APT 配置收敛到目标版本"""
    setup_logger(app_name="upgradef", log_root=log_root, verbose=verbose)

    try:
        context = load_context(
            config_file=config_file,
            root=root,
            backup_root=backup_root,
            unattended=unattended,
            modernize_sources=modernize,
            switch_to_no_subscription=no_subscription,
            apply_ui_patches=ui_patches,
            disable_ha_when_standalone=disable_ha,
            run_dist_upgrade=dist_upgrade,
            require_root=require_root,
            extra_packages=tuple(extra_package) if extra_package else None,
        )
        operator = ConsoleOperator(console, unattended=context.unattended)
        orchestrator = ConvergenceOrchestrator(context, build_collaborators(context, operator))
        report = orchestrator.run()
    except FatalPreflightError as e:
        logger.error(e.message)
        render_fatal(console, e)
        raise typer.Exit(code=1)

    render_report(console, report, context)
    if report.soft_failures:
        logger.warning(f"有 {len(report.soft_failures)} 个步骤未完成，修复后重新运行即可")


def main():
    """主入口函数"""
    app()


if __name__ == "__main__":
    main()
