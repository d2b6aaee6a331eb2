"""
控制台界面模块 - 操作员确认、运行总结和致命错误提示
"""
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from loguru import logger

from ..config import UpgradeContext
from ..core.models import ConvergenceState, RunReport
from ..errors import FatalPreflightError


class ConsoleOperator:
    """通过 rich 提示与操作员交互，无人值守模式下自动确认"""

    def __init__(self, console: Console = None, unattended: bool = False):
        self.console = console or Console()
        self.unattended = unattended

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.unattended:
            logger.info(f"无人值守模式，自动确认: {question}")
            return True
        return Confirm.ask(f"[bold yellow]{question}[/bold yellow]", default=default, console=self.console)


def render_report(console: Console, report: RunReport, context: UpgradeContext):
    """打印运行总结"""
    table = Table(title="收敛结果", box=box.SIMPLE)
    table.add_column("项目", style="cyan")
    table.add_column("内容", style="green")

    table.add_row("经过的状态", " -> ".join(state.value for state in report.states))
    if report.facts is not None:
        table.add_row("平台版本", f"{report.facts.get('platform_major_version')}.{report.facts.get('platform_minor_version')}")
        table.add_row("集群节点", "是" if report.facts.is_clustered else "否")
    if report.snapshot is not None:
        status = "新建" if report.snapshot.created else "已存在"
        table.add_row("备份", f"{report.snapshot.root_path} ({status})")
    table.add_row("改动文件", "\n".join(str(p) for p in report.changed_paths) or "无")
    console.print(table)

    for message in report.warnings:
        console.print(f"  [yellow]警告:[/yellow] {message}")
    for message in report.soft_failures:
        console.print(f"  [red]未完成:[/red] {message}")

    if ConvergenceState.MIGRATING in report.states and not context.run_dist_upgrade:
        console.print(Panel(
            "\n".join([
                "1. 运行 [yellow]apt update[/yellow]",
                "2. 运行 [yellow]apt dist-upgrade[/yellow]，询问配置文件时 Proxmox 配置一般选择保留当前版本",
                "3. 升级成功后重启",
                "4. 运行 [yellow]pveversion[/yellow] 确认版本",
                "",
                "升级前请先备份虚拟机和容器；集群环境一次只升级一个节点。",
            ]),
            title="后续步骤",
            border_style="green",
        ))


def render_fatal(console: Console, error: FatalPreflightError):
    """打印致命错误与修复建议"""
    body = f"[bold red]{error.message}[/bold red]"
    if error.remediation:
        body += f"\n\n{error.remediation}"
    console.print(Panel(body, title="已中止，未做任何改动", border_style="red"))
