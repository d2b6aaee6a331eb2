"""
仓库通道策略

收费通道 (enterprise) 先禁用，再声明对应的免费通道 (no-subscription)；
迁移后检查遗留代号和收费/免费混用的情况。
"""
import re
from pathlib import Path
from typing import Callable, List

from loguru import logger

from .. import config
from ..config import UpgradeContext
from . import deb822
from .format_migrator import FormatMigrator, write_text
from .models import DeclarationFormat, RepositoryDeclaration, SourceEntry

ENABLED_LINE_RE = re.compile(r"^Enabled:\s*(?P<value>\S*)\s*$", re.IGNORECASE)
COMMENT_PREFIX_RE = re.compile(r"^\s*#+\s*")


def is_enterprise(entry: SourceEntry) -> bool:
    return any(config.ENTERPRISE_HOST in uri for uri in entry.uris)


def is_free_tier(entry: SourceEntry) -> bool:
    return any(marker in component for component in entry.components for marker in config.FREE_TIER_MARKERS)


def free_tier_entry(entry: SourceEntry) -> SourceEntry:
    """由收费通道的源推导出对应的免费通道"""
    uris = tuple(
        re.sub(rf"^https?://{re.escape(config.ENTERPRISE_HOST)}",
               f"{config.FREE_TIER_SCHEME}://{config.FREE_TIER_HOST}", uri)
        for uri in entry.uris
    )
    components = tuple(config.CHANNEL_COMPONENTS.get(c, c) for c in entry.components)
    options = tuple(entry.options)
    if not any(key.lower() == "signed-by" for key, _ in options):
        options = options + (("Signed-By", config.PROXMOX_KEYRING),)
    return SourceEntry(
        types=entry.types,
        uris=uris,
        suites=entry.suites,
        components=components,
        options=options,
        enabled=True,
    )


def free_tier_name(declaration: RepositoryDeclaration) -> str:
    stem = declaration.logical_name
    if "enterprise" in stem:
        return stem.replace("enterprise", "no-subscription")
    return f"{stem}-no-subscription"


def is_proxmox(entry: SourceEntry) -> bool:
    return any(host in uri for uri in entry.uris for host in (config.ENTERPRISE_HOST, config.FREE_TIER_HOST))


def provides(entry: SourceEntry, wanted: SourceEntry) -> bool:
    """entry 是否提供 wanted 的 URI、代号和组件（不看启用状态）"""
    if not {u.rstrip("/") for u in wanted.uris} & {u.rstrip("/") for u in entry.uris}:
        return False
    return set(wanted.suites) <= set(entry.suites) and set(wanted.components) <= set(entry.components)


def _active_enterprise(entry: SourceEntry) -> bool:
    return entry.enabled and is_enterprise(entry)


def toggle_legacy_lines(content: str, predicate: Callable[[SourceEntry], bool], enable: bool) -> str:
    """注释掉（或取消注释）满足 predicate 的源行"""
    lines = []
    for line in content.splitlines(keepends=True):
        entry = deb822.parse_legacy_line(line)
        if entry is not None and entry.enabled != enable and predicate(entry):
            line = COMMENT_PREFIX_RE.sub("", line) if enable else "# " + line
        lines.append(line)
    return "".join(lines)


def toggle_structured_stanzas(content: str, predicate: Callable[[SourceEntry], bool], enable: bool) -> str:
    """改写满足 predicate 的块的 Enabled 字段，没有该字段时追加"""
    value = "yes" if enable else "no"
    parts = deb822.split_stanzas(content)
    for index in range(0, len(parts), 2):
        block = parts[index]
        entries = deb822.parse_structured(block)
        if not any(e.enabled != enable and predicate(e) for e in entries):
            continue

        trailing = block[len(block.rstrip("\n")):]
        lines = block.rstrip("\n").split("\n")
        for line_index, line in enumerate(lines):
            if ENABLED_LINE_RE.match(line):
                lines[line_index] = f"Enabled: {value}"
                break
        else:
            lines.append(f"Enabled: {value}")
        parts[index] = "\n".join(lines) + trailing
    return "".join(parts)


class ChannelPolicy:
    """收费通道 -> 免费通道"""

    def __init__(self, context: UpgradeContext, migrator: FormatMigrator):
        self.context = context
        self.migrator = migrator

    def apply(self, declarations: List[RepositoryDeclaration]) -> List[Path]:
        """禁用收费通道并声明免费通道

        返回:
            List[Path]: 被修改或新建的文件
        """
        changed: List[Path] = []
        for declaration in declarations:
            enterprise_entries = [e for e in declaration.entries if e.enabled and is_enterprise(e)]
            if not enterprise_entries:
                continue

            if self._disable(declaration):
                changed.append(declaration.path)

            for path in self._ensure_free_tier(declaration, enterprise_entries):
                if path not in changed:
                    changed.append(path)

        for path in changed:
            self.migrator.record(path)
        return changed

    def _rewrite(self, declaration: RepositoryDeclaration, predicate, enable: bool) -> bool:
        if declaration.format is DeclarationFormat.STRUCTURED:
            new_content = toggle_structured_stanzas(declaration.raw_content, predicate, enable)
        else:
            new_content = toggle_legacy_lines(declaration.raw_content, predicate, enable)

        if new_content == declaration.raw_content:
            return False
        write_text(declaration.path, new_content)
        return True

    def _disable(self, declaration: RepositoryDeclaration) -> bool:
        if not self._rewrite(declaration, _active_enterprise, enable=False):
            return False
        logger.info(f"禁用收费通道: {declaration.path}")
        return True

    def _ensure_free_tier(
        self,
        declaration: RepositoryDeclaration,
        enterprise_entries: List[SourceEntry],
    ) -> List[Path]:
        """保证每个被禁用的收费通道都有启用的免费通道

        已有被禁用的同一免费通道时重新启用它；仍缺少的写入新文件，
        文件名被占用时改用 <name>-upgradef.sources，不改动已有文件。
        """
        wanted = [free_tier_entry(e) for e in enterprise_entries]
        missing = self._missing(wanted)
        if not missing:
            return []

        changed: List[Path] = []
        for other in self.migrator.load_declarations():
            if self._rewrite(other, lambda e: any(provides(e, w) for w in missing), enable=True):
                logger.info(f"重新启用免费通道: {other.path}")
                changed.append(other.path)

        if changed:
            missing = self._missing(wanted)
        if not missing:
            return changed

        path = self._free_path(free_tier_name(declaration))
        content = deb822.render_structured(
            missing,
            header=f"Free-tier replacement for {declaration.path.name}, added by upgradef",
        )
        logger.info(f"声明免费通道: {path}")
        write_text(path, content)
        changed.append(path)
        return changed

    def _missing(self, wanted: List[SourceEntry]) -> List[SourceEntry]:
        """已有启用的声明提供相同 URI、代号和组件时不再重复声明"""
        enabled = [e for d in self.migrator.load_declarations() for e in d.entries if e.enabled]
        return [w for w in wanted if not any(provides(e, w) for e in enabled)]

    def _free_path(self, name: str) -> Path:
        path = self.context.sources_list_d / f"{name}.sources"
        index = 1
        while path.exists():
            suffix = "-upgradef" if index == 1 else f"-upgradef-{index}"
            path = self.context.sources_list_d / f"{name}{suffix}.sources"
            index += 1
        if index > 1:
            logger.info(f"{name}.sources 已存在且未提供所需的免费通道，改用 {path.name}")
        return path


def verify_repositories(context: UpgradeContext, declarations: List[RepositoryDeclaration]) -> List[str]:
    """迁移后一致性检查，返回提示性警告"""
    warnings: List[str] = []
    source = context.source.codename

    leftovers = [
        d.path for d in declarations
        if any(e.enabled and source in e.codenames for e in d.entries)
    ]
    for path in leftovers:
        warnings.append(f"仍有启用的源指向 '{source}': {path}")

    has_enterprise = any(e.enabled and is_enterprise(e) for d in declarations for e in d.entries)
    has_free = any(e.enabled and is_free_tier(e) for d in declarations for e in d.entries)
    if has_enterprise and has_free:
        warnings.append("同时启用了 enterprise 与 no-subscription 仓库，可能导致依赖混乱，生产环境请只保留一种")

    proxmox = [e for d in declarations for e in d.entries if is_proxmox(e)]
    if proxmox and not any(e.enabled for e in proxmox):
        warnings.append("声明了 Proxmox 仓库但全部处于禁用状态，升级将无法获取 Proxmox 软件包")

    return warnings
