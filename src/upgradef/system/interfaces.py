"""
外部协作组件接口

收敛引擎只通过这些窄接口访问外部工具；默认实现见 host.py，测试中使用替身。
"""
from typing import Protocol, Sequence, runtime_checkable

from ..core.models import PreflightResult


@runtime_checkable
class VersionOracle(Protocol):
    """平台版本来源"""

    def current_generation(self) -> str:
        """返回平台主版本号，主机不是预期平台时抛出 ProbeError"""
        ...

    def current_minor(self) -> int:
        ...


@runtime_checkable
class PreflightChecker(Protocol):
    def run_full(self) -> PreflightResult:
        """运行完整预检，含错误级别结论即阻止迁移"""
        ...


@runtime_checkable
class ClusterMembership(Protocol):
    def is_clustered(self) -> bool:
        ...


@runtime_checkable
class PackageManager(Protocol):
    """同步的包管理器，每个操作返回是否成功"""

    def update(self) -> bool:
        ...

    def dist_upgrade(self, options: Sequence[str] = ()) -> bool:
        ...

    def reinstall(self, package: str) -> bool:
        ...

    def install_if_missing(self, package: str) -> bool:
        ...

    def is_installed(self, package: str) -> bool:
        ...


@runtime_checkable
class ServiceController(Protocol):
    def is_active(self, name: str) -> bool:
        ...

    def is_enabled(self, name: str) -> bool:
        ...

    def disable_and_stop(self, name: str) -> bool:
        ...


@runtime_checkable
class BackupTaskMonitor(Protocol):
    def running_tasks(self) -> int:
        """备份服务器上正在运行的任务数，无法查询时返回 0"""
        ...


@runtime_checkable
class Operator(Protocol):
    """与操作员的交互，无人值守模式下自动确认"""

    def confirm(self, question: str, default: bool = False) -> bool:
        ...


class Collaborators:
    """一次运行用到的全部外部协作组件"""

    def __init__(
        self,
        version_oracle: VersionOracle,
        preflight: PreflightChecker,
        cluster: ClusterMembership,
        packages: PackageManager,
        services: ServiceController,
        backup_tasks: BackupTaskMonitor,
        operator: Operator,
    ):
        self.version_oracle = version_oracle
        self.preflight = preflight
        self.cluster = cluster
        self.packages = packages
        self.services = services
        self.backup_tasks = backup_tasks
        self.operator = operator
