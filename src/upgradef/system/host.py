"""
基于 subprocess 的外部协作组件实现

所有外部命令都经由 run_command 执行，调用方只关心返回码和输出。
"""
import os
import re
import shutil
import subprocess
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .. import config
from ..core.models import Finding, PreflightResult, Severity
from ..errors import FatalPreflightError, ProbeError
from .interfaces import Collaborators, Operator

PVE_VERSION_RE = re.compile(r"pve-manager/(\d+)\.(\d+)")
PBS_VERSION_RE = re.compile(r"proxmox-backup-server\s+(\d+)\.(\d+)")
PREFLIGHT_LINE_RE = re.compile(r"^\s*(FAIL|WARN|NOTICE|PASS|SKIP|INFO):\s*(.*)$")

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def run_command(
    cmd: List[str],
    timeout: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """执行外部命令并捕获输出，不抛出非零返回码异常

    Args:
        cmd: 命令列表
        timeout: 超时秒数
        env: 追加的环境变量

    Returns:
        subprocess.CompletedProcess: 执行结果
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug(f"执行命令: {' '.join(cmd)}")
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=full_env,
        check=False,
    )
    if result.returncode != 0:
        logger.debug(f"命令返回 {result.returncode}: {result.stderr.strip()}")
    return result


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def run_required(cmd: List[str], timeout: int) -> subprocess.CompletedProcess:
    """执行检查阶段必需的命令，超时或无法启动时抛出 ProbeError"""
    try:
        return run_command(cmd, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ProbeError(
            f"{cmd[0]} 在 {timeout} 秒内没有返回",
            f"请手动运行 '{' '.join(cmd)}' 确认其能正常结束后重试。",
        )
    except (subprocess.SubprocessError, OSError) as e:
        raise ProbeError(f"无法执行 {cmd[0]}: {e}", f"请确认 {cmd[0]} 可以正常运行后重试。")


class HostVersionOracle:
    """通过 pveversion（或备份服务器版本）读取平台版本"""

    def __init__(self):
        self._version = None

    def _read(self):
        if self._version is not None:
            return self._version

        if tool_available(config.VERSION_TOOL):
            result = run_required([config.VERSION_TOOL], timeout=30)
            match = PVE_VERSION_RE.search(result.stdout)
            if result.returncode != 0 or not match:
                raise ProbeError(f"无法解析 {config.VERSION_TOOL} 输出: {result.stdout.strip()!r}")
            self._version = (match.group(1), int(match.group(2)))
            return self._version

        if tool_available(config.BACKUP_MANAGER_TOOL):
            result = run_required([config.BACKUP_MANAGER_TOOL, "versions"], timeout=30)
            match = PBS_VERSION_RE.search(result.stdout)
            if result.returncode != 0 or not match:
                raise ProbeError(f"无法解析 {config.BACKUP_MANAGER_TOOL} 输出")
            major = config.BACKUP_SERVER_GENERATIONS.get(match.group(1), f"pbs-{match.group(1)}")
            self._version = (major, int(match.group(2)))
            return self._version

        raise ProbeError(
            f"找不到 {config.VERSION_TOOL}，当前主机不是 Proxmox 系统",
            "请在 Proxmox VE 或 Proxmox Backup Server 主机上运行本工具。",
        )

    def current_generation(self) -> str:
        return self._read()[0]

    def current_minor(self) -> int:
        return self._read()[1]


class HostPreflightChecker:
    """运行官方升级检查工具 (pve8to9 --full)"""

    def __init__(self, tool: str = config.PREFLIGHT_TOOL, timeout: int = 600):
        self.tool = tool
        self.timeout = timeout

    def run_full(self) -> PreflightResult:
        if not tool_available(self.tool):
            raise FatalPreflightError(
                f"缺少预检工具 {self.tool}",
                "请先更新当前系统: apt update && apt dist-upgrade",
            )

        logger.info(f"运行官方升级检查: {self.tool} --full")
        try:
            result = run_command([self.tool, "--full"], timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise FatalPreflightError(
                f"{self.tool} --full 在 {self.timeout} 秒内没有完成",
                f"请手动运行 '{self.tool} --full' 查看卡住的检查项，处理后重新运行本工具。",
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise FatalPreflightError(
                f"无法执行 {self.tool}: {e}",
                f"请确认 {self.tool} 可以正常运行后重试。",
            )
        findings = parse_preflight_output(result.stdout)

        if result.returncode != 0 and not any(f.severity is Severity.ERROR for f in findings):
            findings.append(Finding(Severity.ERROR, f"{self.tool} 返回码 {result.returncode}"))
        return PreflightResult(findings)


def parse_preflight_output(output: str) -> List[Finding]:
    """把检查工具的 FAIL/WARN 行转换为结论"""
    findings = []
    for line in output.splitlines():
        match = PREFLIGHT_LINE_RE.match(line)
        if not match:
            continue
        level, message = match.groups()
        if level == "FAIL":
            findings.append(Finding(Severity.ERROR, message))
        elif level == "WARN":
            findings.append(Finding(Severity.WARNING, message))
    return findings


class HostClusterMembership:
    def is_clustered(self) -> bool:
        if not tool_available(config.CLUSTER_TOOL):
            return False
        return run_required([config.CLUSTER_TOOL, "status"], timeout=30).returncode == 0


class AptPackageManager:
    """apt-get / dpkg-query 包装"""

    def _apt(self, args: Sequence[str]) -> bool:
        result = run_command(["apt-get", "-y", *args], env=APT_ENV)
        if result.returncode != 0:
            logger.warning(f"apt-get {' '.join(args)} 失败: {result.stderr.strip()}")
        return result.returncode == 0

    def update(self) -> bool:
        return self._apt(["update"])

    def dist_upgrade(self, options: Sequence[str] = ()) -> bool:
        return self._apt([*options, "dist-upgrade"])

    def reinstall(self, package: str) -> bool:
        return self._apt(["install", "--reinstall", package])

    def is_installed(self, package: str) -> bool:
        result = run_command(["dpkg-query", "-W", "-f=${Status}", package])
        return result.returncode == 0 and "install ok installed" in result.stdout

    def install_if_missing(self, package: str) -> bool:
        if self.is_installed(package):
            return True
        return self._apt(["install", package])


class SystemdServiceController:
    def is_active(self, name: str) -> bool:
        return run_command(["systemctl", "is-active", "--quiet", name]).returncode == 0

    def is_enabled(self, name: str) -> bool:
        return run_command(["systemctl", "is-enabled", "--quiet", name]).returncode == 0

    def disable_and_stop(self, name: str) -> bool:
        return run_command(["systemctl", "disable", "--now", name]).returncode == 0


class HostBackupTaskMonitor:
    """统计备份服务器上正在运行的任务"""

    def running_tasks(self) -> int:
        if not tool_available(config.BACKUP_MANAGER_TOOL):
            logger.warning(f"未找到 {config.BACKUP_MANAGER_TOOL}，跳过备份任务检查")
            return 0
        result = run_required([config.BACKUP_MANAGER_TOOL, "task", "list", "--all"], timeout=60)
        if result.returncode != 0:
            return 0
        return sum(1 for line in result.stdout.splitlines() if "running" in line.lower())


def build_host_collaborators(operator: Operator) -> Collaborators:
    """组装默认的主机协作组件"""
    return Collaborators(
        version_oracle=HostVersionOracle(),
        preflight=HostPreflightChecker(),
        cluster=HostClusterMembership(),
        packages=AptPackageManager(),
        services=SystemdServiceController(),
        backup_tasks=HostBackupTaskMonitor(),
        operator=operator,
    )
