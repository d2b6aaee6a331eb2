"""
upgradef - Proxmox 8 -> 9 升级准备工具

把 APT 仓库配置从源版本收敛到目标版本，并应用幂等的升级后调整。
"""

__version__ = "0.1.0"

from .config import UpgradeContext, load_context
from .core.orchestrator import ConvergenceOrchestrator
from .errors import FatalPreflightError, UpgradeError

__all__ = [
    'ConvergenceOrchestrator',
    'FatalPreflightError',
    'UpgradeContext',
    'UpgradeError',
    'load_context',
]
