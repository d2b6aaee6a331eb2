"""
系统状态探测模块 - 只读地收集本次运行所需的系统事实
"""
import os
import subprocess
from typing import List

from loguru import logger

from .. import config
from ..config import UpgradeContext
from ..errors import ProbeError, UnsupportedVersionError
from ..system.interfaces import Collaborators
from .models import SystemFact, SystemFactSet


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


class StateProbe:
    """系统状态探测器，每次运行重新探测，不做缓存"""

    def __init__(self, context: UpgradeContext, collaborators: Collaborators):
        self.context = context
        self.collaborators = collaborators

    def probe(self) -> SystemFactSet:
        """探测系统事实

        Returns:
            SystemFactSet: 本次运行的系统事实

        Raises:
            ProbeError: 必需的外部信号无法读取
            UnsupportedVersionError: 平台版本不在支持范围内
        """
        oracle = self.collaborators.version_oracle
        try:
            major = str(oracle.current_generation())
            minor = int(oracle.current_minor())
        except ProbeError:
            raise
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise ProbeError(f"读取平台版本失败: {e}") from e

        generation = self.classify(major)
        try:
            facts = self._collect(major, minor, generation)
        except ProbeError:
            raise
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise ProbeError(f"读取系统状态失败: {e}", "请确认 dpkg-query、pvecm 等工具可以正常运行后重试。") from e

        fact_set = SystemFactSet(facts)
        logger.debug(f"系统事实: {fact_set.as_dict()}")
        return fact_set

    def _collect(self, major: str, minor: int, generation: str) -> List[SystemFact]:
        packages = self.collaborators.packages
        has_backup_component = packages.is_installed(config.BACKUP_SERVER_PACKAGE)
        running_tasks = self.collaborators.backup_tasks.running_tasks() if has_backup_component else 0

        facts = [
            SystemFact("platform_major_version", major),
            SystemFact("platform_minor_version", str(minor)),
            SystemFact("generation", generation),
            SystemFact("running_as_root", _yes_no(os.geteuid() == 0)),
            SystemFact("has_pve", _yes_no(packages.is_installed("pve-manager"))),
            SystemFact("has_backup_component", _yes_no(has_backup_component)),
            SystemFact("backup_running_tasks", str(running_tasks)),
            SystemFact("has_datacenter_manager", _yes_no(packages.is_installed(config.DATACENTER_MANAGER_PACKAGE))),
            SystemFact("is_clustered", _yes_no(self.collaborators.cluster.is_clustered())),
            SystemFact("nag_hook_present", _yes_no(self.context.apt_hook.exists())),
        ]
        return facts

    def classify(self, major: str) -> str:
        """把平台主版本归类为 'source' 或 'target'，其余一律视为不支持"""
        if major == self.context.source.generation_id:
            return "source"
        if major == self.context.target.generation_id:
            return "target"
        raise UnsupportedVersionError(major, list(self.context.supported_generations))
