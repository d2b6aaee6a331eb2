"""
程序全局配置模块

所有来自环境变量、配置文件和命令行的设置汇总为一个不可变的 UpgradeContext，
并显式传递给每个组件。
"""
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import tomli

from .core.models import Generation
from .errors import ConfigError

# 源版本与目标版本
SOURCE_GENERATION = Generation("8", "bookworm")
TARGET_GENERATION = Generation("9", "trixie")

# APT 配置路径（相对于 root）
SOURCES_LIST = "etc/apt/sources.list"
SOURCES_LIST_D = "etc/apt/sources.list.d"
APT_CONF_D = "etc/apt/apt.conf.d"

# 备份目录: <backup_root>/apt_backup_<YYYY-MM-DD>
BACKUP_DIR_PREFIX = "apt_backup_"
BACKUP_MANIFEST = "manifest.json"

# 收费/免费仓库通道
ENTERPRISE_HOST = "enterprise.proxmox.com"
FREE_TIER_HOST = "download.proxmox.com"
FREE_TIER_SCHEME = "http"
PROXMOX_KEYRING = "/usr/share/keyrings/proxmox-archive-keyring.gpg"
CHANNEL_COMPONENTS = {
    "pve-enterprise": "pve-no-subscription",
    "pbs-enterprise": "pbs-no-subscription",
    "pdm-enterprise": "pdm-no-subscription",
    "enterprise": "no-subscription",
}
FREE_TIER_MARKERS = ("no-subscription",)

# 集群相关服务，单节点时禁用
HA_SERVICES = ("pve-ha-lrm", "pve-ha-crm", "corosync")

# UI 补丁相关
WIDGET_TOOLKIT_PACKAGE = "proxmox-widget-toolkit"
HELPER_SCRIPT = "usr/local/sbin/upgradef-no-nag.sh"
APT_HOOK = "etc/apt/apt.conf.d/99upgradef-no-nag"

# 外部工具
VERSION_TOOL = "pveversion"
PREFLIGHT_TOOL = "pve8to9"
BACKUP_MANAGER_TOOL = "proxmox-backup-manager"
CLUSTER_TOOL = "pvecm"
BACKUP_SERVER_PACKAGE = "proxmox-backup-server"
DATACENTER_MANAGER_PACKAGE = "proxmox-datacenter-manager"
# 备份服务器主版本到平台主版本的对应
BACKUP_SERVER_GENERATIONS = {"3": "8", "4": "9"}

DEFAULT_DIST_UPGRADE_OPTIONS = (
    "-o", "Dpkg::Options::=--force-confdef",
    "-o", "Dpkg::Options::=--force-confold",
)

# 环境变量名 -> UpgradeContext 字段
ENV_PREFIX = "UPGRADEF_"
ENV_FIELDS = {
    "ROOT": "root",
    "BACKUP_ROOT": "backup_root",
    "UNATTENDED": "unattended",
    "MODERNIZE_SOURCES": "modernize_sources",
    "NO_SUBSCRIPTION": "switch_to_no_subscription",
    "UI_PATCHES": "apply_ui_patches",
    "DISABLE_HA": "disable_ha_when_standalone",
    "DIST_UPGRADE": "run_dist_upgrade",
    "REQUIRE_ROOT": "require_root",
    "EXTRA_PACKAGES": "extra_packages",
}

TRUE_STRINGS = ("1", "true", "yes", "y", "on")
FALSE_STRINGS = ("0", "false", "no", "n", "off", "")


@dataclass(frozen=True)
class UpgradeContext:
    """一次运行的全部配置"""
    root: Path = Path("/")
    source: Generation = SOURCE_GENERATION
    target: Generation = TARGET_GENERATION
    backup_root: Path = Path("/root")
    unattended: bool = False
    modernize_sources: bool = True
    switch_to_no_subscription: bool = True
    apply_ui_patches: bool = True
    disable_ha_when_standalone: bool = True
    run_dist_upgrade: bool = False
    require_root: bool = True
    extra_packages: Tuple[str, ...] = ()
    ha_services: Tuple[str, ...] = HA_SERVICES
    dist_upgrade_options: Tuple[str, ...] = field(default=DEFAULT_DIST_UPGRADE_OPTIONS)

    def path(self, relative: str) -> Path:
        """把系统绝对路径映射到 root 之下"""
        return self.root / str(relative).lstrip("/")

    @property
    def sources_list(self) -> Path:
        return self.path(SOURCES_LIST)

    @property
    def sources_list_d(self) -> Path:
        return self.path(SOURCES_LIST_D)

    @property
    def backup_dir(self) -> Path:
        return self.path(str(self.backup_root))

    @property
    def helper_script(self) -> Path:
        return self.path(HELPER_SCRIPT)

    @property
    def apt_hook(self) -> Path:
        return self.path(APT_HOOK)

    @property
    def supported_generations(self) -> Dict[str, Generation]:
        return {
            self.source.generation_id: self.source,
            self.target.generation_id: self.target,
        }

    def repository_sources(self):
        """需要备份的仓库配置路径"""
        return [self.sources_list, self.sources_list_d]


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ConfigError(f"{name} 不是合法的布尔值: {value!r}")


def _coerce(name: str, value: Any) -> Any:
    """按字段类型转换配置值"""
    if name in ("root", "backup_root"):
        return Path(str(value))
    if name in ("extra_packages", "ha_services", "dist_upgrade_options"):
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return tuple(str(item) for item in value)
    if name in ("source", "target"):
        return value
    return parse_bool(value, name)


def load_config_file(config_file: Path) -> Dict[str, Any]:
    """读取 TOML 配置文件，支持顶层键或 [upgradef] 表"""
    config_file = Path(config_file)
    if not config_file.exists():
        raise ConfigError(f"配置文件不存在: {config_file}")
    try:
        with open(config_file, 'rb') as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigError(f"配置文件格式错误 {config_file}: {e}") from e

    section = data.get("upgradef", data)
    values: Dict[str, Any] = {}

    for key in ("source", "target"):
        table = section.get(key)
        if table is None:
            continue
        try:
            values[key] = Generation(str(table["version"]), str(table["codename"]))
        except (KeyError, TypeError) as e:
            raise ConfigError(f"[{key}] 需要 version 和 codename 两个键") from e

    known = {f.name for f in fields(UpgradeContext)}
    for key, value in section.items():
        if key in ("source", "target"):
            continue
        if key not in known:
            raise ConfigError(f"未知的配置项: {key}")
        values[key] = _coerce(key, value)
    return values


def load_env(env: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for suffix, name in ENV_FIELDS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        values[name] = _coerce(name, raw)
    return values


def load_context(
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides,
) -> UpgradeContext:
    """按 默认值 <- 配置文件 <- 环境变量 <- 显式参数 的顺序构建上下文

    Args:
        config_file: 可选的 TOML 配置文件
        env: 环境变量映射，默认为 os.environ
        overrides: 显式覆盖项，值为 None 的项被忽略

    Returns:
        UpgradeContext: 不可变的运行配置
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    if config_file is not None:
        values.update(load_config_file(config_file))

    values.update(load_env(env))

    for name, value in overrides.items():
        if value is not None:
            values[name] = _coerce(name, value)

    context = replace(UpgradeContext(), **values)
    if context.source.generation_id == context.target.generation_id:
        raise ConfigError("源版本和目标版本不能相同")
    return context
