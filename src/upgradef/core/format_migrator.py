"""
仓库声明格式迁移模块

负责:
    - 加载 sources.list 与 sources.list.d 中的全部声明
    - 单行格式的代号替换 (bookworm -> trixie)
    - 单行格式到结构化格式 (deb822) 的迁移，旧文件改名为 .bak 保留
"""
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from ..config import UpgradeContext
from . import deb822
from .models import DeclarationFormat, RepositoryDeclaration, SourceEntry

SUITES_LINE_RE = re.compile(r"^(?P<prefix>Suites:\s*)(?P<value>.*)$", re.IGNORECASE | re.MULTILINE)


def read_text(path: Path) -> str:
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read()


def write_text(path: Path, content: str):
    """先写临时文件再替换，中断时不会留下写了一半的声明文件"""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.upgradef-tmp")
    with open(temp_path, 'w', encoding='utf-8') as f:
        f.write(content)
    if path.exists():
        shutil.copymode(path, temp_path)
    os.replace(temp_path, path)


def rename_aside(path: Path) -> Path:
    """把文件改名为 <name>.bak，已存在的 .bak 不覆盖，依次尝试 .bak.1、.bak.2 ..."""
    candidate = path.with_name(path.name + ".bak")
    index = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}.bak.{index}")
        index += 1
    path.rename(candidate)
    return candidate


def declaration_from_file(path: Path) -> RepositoryDeclaration:
    """读取单个声明文件，格式在此确定一次"""
    fmt = DeclarationFormat.for_path(path)
    content = read_text(path)
    entries = tuple(deb822.parse(content, fmt))

    codename = ""
    ordered = [e for e in entries if e.enabled] + [e for e in entries if not e.enabled]
    for entry in ordered:
        if entry.codenames:
            codename = entry.codenames[0]
            break

    return RepositoryDeclaration(
        format=fmt,
        path=path,
        enabled=any(entry.enabled for entry in entries),
        codename=codename,
        raw_content=content,
        entries=entries,
    )


class FormatMigrator:
    """仓库声明迁移器"""

    def __init__(self, context: UpgradeContext):
        self.context = context
        self.changes: List[Path] = []

    def declaration_paths(self) -> List[Path]:
        paths = []
        if self.context.sources_list.is_file():
            paths.append(self.context.sources_list)
        sources_dir = self.context.sources_list_d
        if sources_dir.is_dir():
            paths.extend(sorted(p for p in sources_dir.glob("*.list") if p.is_file()))
            paths.extend(sorted(p for p in sources_dir.glob("*.sources") if p.is_file()))
        return paths

    def load_declarations(self) -> List[RepositoryDeclaration]:
        """加载全部生效中的声明文件（.bak 等其他后缀不会被 APT 读取，也不加载）"""
        return [declaration_from_file(path) for path in self.declaration_paths()]

    def record(self, path: Path):
        if path not in self.changes:
            self.changes.append(path)

    def migrate_token(self, file: Path, from_token: str, to_token: str) -> bool:
        """替换文件中出现的全部 from_token

        参数:
            file: 声明文件
            from_token: 原代号
            to_token: 目标代号

        返回:
            bool: 文件是否被修改；不含 from_token 时不写文件
        """
        file = Path(file)
        if not file.exists():
            return False
        content = read_text(file)
        if from_token not in content:
            return False

        logger.info(f"更新代号 ({from_token} -> {to_token}): {file}")
        write_text(file, content.replace(from_token, to_token))
        self.record(file)
        return True

    def migrate_all_tokens(self, from_token: str, to_token: str) -> List[Path]:
        """对所有声明文件执行代号替换，返回被修改的文件"""
        changed = []
        for path in self.declaration_paths():
            if self.migrate_token(path, from_token, to_token):
                changed.append(path)
        return changed

    def migrate_to_structured_format(
        self,
        declarations: List[RepositoryDeclaration],
        target_codename: str,
    ) -> List[RepositoryDeclaration]:
        """把声明迁移为绑定目标代号的结构化格式

        同一逻辑仓库同时存在两种格式时结构化格式优先，单行格式文件改名为 .bak。
        只有单行格式时，组内所有文件合并写入同一个结构化文件；
        组内都不提及源代号时保持不动。

        返回:
            List[RepositoryDeclaration]: 迁移后重新加载的全部声明
        """
        source_codename = self.context.source.codename
        groups: Dict[str, Dict[DeclarationFormat, List[RepositoryDeclaration]]] = {}
        for declaration in declarations:
            group = groups.setdefault(declaration.logical_name, {})
            group.setdefault(declaration.format, []).append(declaration)

        for logical_name, group in groups.items():
            structured = group.get(DeclarationFormat.STRUCTURED, [])
            legacy = group.get(DeclarationFormat.LEGACY_LINE, [])

            for declaration in structured:
                self._retarget_structured(declaration, source_codename, target_codename)

            if structured:
                for declaration in legacy:
                    moved = rename_aside(declaration.path)
                    logger.info(f"已存在结构化声明，旧格式文件改名保留: {declaration.path} -> {moved}")
                    self.record(declaration.path)
                continue

            if legacy:
                self._convert_group(logical_name, legacy, source_codename, target_codename)

        return self.load_declarations()

    def structured_path_for(self, declaration: RepositoryDeclaration) -> Path:
        return self.context.sources_list_d / f"{declaration.logical_name}.sources"

    def _convert_group(
        self,
        logical_name: str,
        legacy: List[RepositoryDeclaration],
        source: str,
        target: str,
    ) -> Optional[Path]:
        """同一逻辑仓库的单行格式文件合并为一个结构化文件，旧文件改名为 .bak

        组内没有文件提及源代号，或没有任何可解析的源时保持不动。
        """
        names = ", ".join(d.path.name for d in legacy)
        if not any(d.mentions(source) for d in legacy):
            logger.debug(f"未提及 {source}，保持不动: {names}")
            return None

        entries: List[SourceEntry] = [
            deb822.retarget_suites(entry, source, target)
            for declaration in legacy
            for entry in declaration.entries
        ]
        if not entries:
            logger.debug(f"没有可解析的源，保持不动: {names}")
            return None

        content = deb822.render_structured(entries, header=f"Converted from {names} by upgradef")
        new_path = self.structured_path_for(legacy[0])
        logger.info(f"迁移为结构化格式: {names} -> {new_path}")
        write_text(new_path, content)
        self.record(new_path)

        for declaration in legacy:
            moved = rename_aside(declaration.path)
            logger.info(f"旧格式文件改名保留: {moved}")
            self.record(declaration.path)
        return new_path

    def _retarget_structured(self, declaration: RepositoryDeclaration, source: str, target: str) -> bool:
        """只改写 Suites 行中的源代号，保留文件其余内容与 Enabled 标记"""
        token_re = re.compile(rf"(?<![\w.-]){re.escape(source)}(?=$|[\s/-])")

        def replace_suites(match):
            return match.group("prefix") + token_re.sub(target, match.group("value"))

        new_content = SUITES_LINE_RE.sub(replace_suites, declaration.raw_content)
        if new_content == declaration.raw_content:
            return False

        logger.info(f"更新结构化声明代号 ({source} -> {target}): {declaration.path}")
        write_text(declaration.path, new_content)
        self.record(declaration.path)
        return True
