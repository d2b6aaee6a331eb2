"""
错误类型模块

致命错误（FatalPreflightError 及其子类）在任何文件改动之前终止运行；
提示性警告和软失败不是异常，由编排器记录到 RunReport 中。
"""
from typing import Optional


class UpgradeError(Exception):
    """upgradef 所有错误的基类"""


class FatalPreflightError(UpgradeError):
    """阻止一切改动的致命错误，附带给操作员的修复建议"""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation or ""


class ProbeError(FatalPreflightError):
    """必需的外部信号无法读取（例如版本工具缺失）"""

    def __init__(self, reason: str, remediation: Optional[str] = None):
        super().__init__(f"系统探测失败: {reason}", remediation)
        self.reason = reason


class UnsupportedVersionError(FatalPreflightError):
    """探测到的版本既不是源版本也不是目标版本"""

    def __init__(self, generation_id: str, supported):
        supported_str = ", ".join(supported)
        super().__init__(
            f"不支持的平台版本: {generation_id}（支持: {supported_str}）",
            "本工具只处理源版本到目标版本的迁移，请先手动升级到受支持的版本。",
        )
        self.generation_id = generation_id


class OperatorAbort(FatalPreflightError):
    """操作员在确认提示中选择了中止"""

    def __init__(self, message: str):
        super().__init__(message, "确认环境安全后重新运行本工具即可。")


class CollaboratorError(UpgradeError):
    """外部协作组件（apt、systemctl 等）执行失败"""

    def __init__(self, command, returncode: int, output: str = ""):
        cmd_str = " ".join(command) if isinstance(command, (list, tuple)) else str(command)
        super().__init__(f"命令执行失败 ({returncode}): {cmd_str}")
        self.command = command
        self.returncode = returncode
        self.output = output


class ConfigError(FatalPreflightError):
    """配置文件或环境变量取值非法"""

    def __init__(self, message: str):
        super().__init__(message, "请检查配置文件和 UPGRADEF_* 环境变量的取值。")
