"""
APT 源声明的解析与渲染

支持两种格式:
    单行格式 (.list):   deb [signed-by=/x.gpg] http://host/debian bookworm main contrib
    结构化格式 (.sources): deb822 键值块，块之间以空行分隔
"""
import re
from typing import Dict, List, Optional, Sequence, Tuple

from .models import DeclarationFormat, SourceEntry

LEGACY_LINE_RE = re.compile(
    r"^(?P<type>deb|deb-src)\s+"
    r"(?:\[(?P<options>[^\]]*)\]\s+)?"
    r"(?P<uri>\S+)\s+"
    r"(?P<suite>\S+)"
    r"(?:\s+(?P<components>[^#]*))?"
)
FIELD_RE = re.compile(r"^(?P<key>[A-Za-z][A-Za-z0-9-]*):\s*(?P<value>.*)$")
STANZA_SPLIT_RE = re.compile(r"(\n[ \t]*\n)")

# 单行格式选项名 -> deb822 字段名
LEGACY_OPTION_FIELDS = {
    "arch": "Architectures",
    "lang": "Languages",
    "target": "Targets",
    "pdiffs": "PDiffs",
    "by-hash": "By-Hash",
    "allow-insecure": "Allow-Insecure",
    "allow-weak": "Allow-Weak",
    "allow-downgrade-to-insecure": "Allow-Downgrade-To-Insecure",
    "trusted": "Trusted",
    "signed-by": "Signed-By",
    "check-valid-until": "Check-Valid-Until",
    "valid-until-min": "Valid-Until-Min",
    "valid-until-max": "Valid-Until-Max",
    "check-date": "Check-Date",
    "date-max-future": "Date-Max-Future",
    "inrelease-path": "InRelease-Path",
}

CORE_FIELDS = ("types", "uris", "suites", "components", "enabled")

# arch+=i386 -> Architectures-Add, lang-=de -> Languages-Remove
OPTION_MODIFIERS = (("+", "-Add"), ("-", "-Remove"))


def legacy_option_field(key: str) -> str:
    """单行格式选项名转换为 deb822 字段名，未知选项原样保留"""
    for modifier, suffix in OPTION_MODIFIERS:
        base = key[:-len(modifier)]
        if key.endswith(modifier) and base.lower() in LEGACY_OPTION_FIELDS:
            return LEGACY_OPTION_FIELDS[base.lower()] + suffix
    return LEGACY_OPTION_FIELDS.get(key.lower(), key)


def parse_legacy_line(line: str) -> Optional[SourceEntry]:
    """解析一行单行格式的源，被注释掉的源返回 enabled=False"""
    text = line.strip()
    enabled = True
    if text.startswith("#"):
        text = text.lstrip("#").strip()
        enabled = False
    match = LEGACY_LINE_RE.match(text)
    if not match or match.group("uri").startswith("cdrom:"):
        return None

    options: List[Tuple[str, str]] = []
    for item in (match.group("options") or "").split():
        key, _, value = item.partition("=")
        options.append((legacy_option_field(key), value.replace(",", " ")))

    components = tuple((match.group("components") or "").split())
    return SourceEntry(
        types=(match.group("type"),),
        uris=(match.group("uri"),),
        suites=(match.group("suite"),),
        components=components,
        options=tuple(options),
        enabled=enabled,
    )


def parse_legacy(content: str) -> List[SourceEntry]:
    entries = []
    for line in content.splitlines():
        entry = parse_legacy_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def split_stanzas(content: str) -> List[str]:
    """按空行拆分 deb822 文本，返回的列表中偶数位是块，奇数位是分隔符"""
    return STANZA_SPLIT_RE.split(content)


def parse_stanza(block: str) -> Dict[str, str]:
    """解析单个 deb822 块，键名统一为小写，续行拼接到上一个字段"""
    fields: Dict[str, str] = {}
    current = None
    for line in block.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if line[0] in (" ", "\t") and current is not None:
            fields[current] = f"{fields[current]}\n{line.strip()}"
            continue
        match = FIELD_RE.match(line)
        if match:
            current = match.group("key")
            fields[current] = match.group("value").strip()
    return fields


def parse_structured(content: str) -> List[SourceEntry]:
    entries = []
    for block in split_stanzas(content)[::2]:
        raw_fields = parse_stanza(block)
        lowered = {key.lower(): value for key, value in raw_fields.items()}
        if "uris" not in lowered or "suites" not in lowered:
            continue
        enabled = lowered.get("enabled", "yes").strip().lower() not in ("no", "false", "0")
        options = tuple(
            (key, value) for key, value in raw_fields.items()
            if key.lower() not in CORE_FIELDS
        )
        entries.append(SourceEntry(
            types=tuple(lowered.get("types", "deb").split()),
            uris=tuple(lowered["uris"].split()),
            suites=tuple(lowered["suites"].split()),
            components=tuple(lowered.get("components", "").split()),
            options=options,
            enabled=enabled,
        ))
    return entries


def parse(content: str, fmt: DeclarationFormat) -> List[SourceEntry]:
    if fmt is DeclarationFormat.STRUCTURED:
        return parse_structured(content)
    return parse_legacy(content)


def merge_types(entries: Sequence[SourceEntry]) -> List[SourceEntry]:
    """合并只有类型不同的源（deb 与 deb-src 合为一个块）"""
    merged: List[SourceEntry] = []
    for entry in entries:
        for index, existing in enumerate(merged):
            if (existing.uris, existing.suites, existing.components, existing.options, existing.enabled) == \
                    (entry.uris, entry.suites, entry.components, entry.options, entry.enabled):
                types = existing.types + tuple(t for t in entry.types if t not in existing.types)
                merged[index] = SourceEntry(
                    types=types,
                    uris=existing.uris,
                    suites=existing.suites,
                    components=existing.components,
                    options=existing.options,
                    enabled=existing.enabled,
                )
                break
        else:
            merged.append(entry)
    return merged


def render_entry(entry: SourceEntry) -> str:
    lines = [
        f"Types: {' '.join(entry.types)}",
        f"URIs: {' '.join(entry.uris)}",
        f"Suites: {' '.join(entry.suites)}",
    ]
    if entry.components:
        lines.append(f"Components: {' '.join(entry.components)}")
    for key, value in entry.options:
        value_lines = value.split("\n")
        lines.append(f"{key}: {value_lines[0]}")
        lines.extend(f" {extra}" for extra in value_lines[1:])
    if not entry.enabled:
        lines.append("Enabled: no")
    return "\n".join(lines)


def render_structured(entries: Sequence[SourceEntry], header: str = "") -> str:
    """渲染为 deb822 文本，以换行结尾"""
    blocks = [render_entry(entry) for entry in merge_types(entries)]
    body = "\n\n".join(blocks) + "\n"
    if header:
        header_lines = "\n".join(f"# {line}" if line else "#" for line in header.splitlines())
        return f"{header_lines}\n{body}"
    return body


def retarget_suites(entry: SourceEntry, source: str, target: str) -> SourceEntry:
    """把属于 source 代号的 suite 改为 target 代号"""
    suites = tuple(
        target + suite[len(source):] if codename == source else suite
        for suite, codename in zip(entry.suites, entry.codenames)
    )
    return SourceEntry(
        types=entry.types,
        uris=entry.uris,
        suites=suites,
        components=entry.components,
        options=entry.options,
        enabled=entry.enabled,
    )
