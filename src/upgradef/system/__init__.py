"""
外部协作组件: 接口定义与基于 subprocess 的主机实现
"""
from .interfaces import (
    BackupTaskMonitor,
    ClusterMembership,
    Collaborators,
    Operator,
    PackageManager,
    PreflightChecker,
    ServiceController,
    VersionOracle,
)

__all__ = [
    'BackupTaskMonitor',
    'ClusterMembership',
    'Collaborators',
    'Operator',
    'PackageManager',
    'PreflightChecker',
    'ServiceController',
    'VersionOracle',
]
