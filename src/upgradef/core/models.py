"""upgradef 数据模型"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class Generation:
    """一个平台大版本，及其在仓库声明中使用的发行代号"""
    generation_id: str  # 平台主版本号，如 "8"
    codename: str  # 发行代号，如 "bookworm"

    def __str__(self) -> str:
        return f"{self.generation_id} ({self.codename})"


@dataclass(frozen=True)
class SystemFact:
    """单条系统事实，一次运行内不可变"""
    name: str
    value: str


class SystemFactSet:
    """一次探测得到的全部系统事实"""

    TRUE_VALUES = ("yes", "true", "1")

    def __init__(self, facts: Iterable[SystemFact]):
        self._facts: Dict[str, SystemFact] = {}
        for fact in facts:
            self._facts[fact.name] = fact

    def __iter__(self):
        return iter(self._facts.values())

    def __len__(self) -> int:
        return len(self._facts)

    def __contains__(self, name: str) -> bool:
        return name in self._facts

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        fact = self._facts.get(name)
        return fact.value if fact is not None else default

    def flag(self, name: str) -> bool:
        return (self.get(name, "") or "").lower() in self.TRUE_VALUES

    @property
    def generation(self) -> str:
        """'source' 或 'target'"""
        return self.get("generation", "")

    @property
    def is_clustered(self) -> bool:
        return self.flag("is_clustered")

    @property
    def has_pve(self) -> bool:
        return self.flag("has_pve")

    @property
    def has_backup_component(self) -> bool:
        return self.flag("has_backup_component")

    @property
    def running_as_root(self) -> bool:
        return self.flag("running_as_root")

    def as_dict(self) -> Dict[str, str]:
        return {name: fact.value for name, fact in self._facts.items()}


class DeclarationFormat(Enum):
    """仓库声明格式，加载时确定一次"""
    LEGACY_LINE = "legacy-line"  # 每行一个源: deb [opts] uri suite comp...
    STRUCTURED = "structured"  # deb822 键值块

    @classmethod
    def for_path(cls, path: Path) -> "DeclarationFormat":
        if path.suffix == ".sources":
            return cls.STRUCTURED
        return cls.LEGACY_LINE


@dataclass(frozen=True)
class SourceEntry:
    """声明中的单个软件源"""
    types: Tuple[str, ...]
    uris: Tuple[str, ...]
    suites: Tuple[str, ...]
    components: Tuple[str, ...] = ()
    options: Tuple[Tuple[str, str], ...] = ()  # (键, 值)，保持原有顺序
    enabled: bool = True

    @property
    def codenames(self) -> Tuple[str, ...]:
        # bookworm-security / bookworm-updates 都属于 bookworm
        return tuple(suite.split("-", 1)[0].split("/", 1)[0] for suite in self.suites)


@dataclass(frozen=True)
class RepositoryDeclaration:
    """一个已配置的软件源文件"""
    format: DeclarationFormat
    path: Path
    enabled: bool
    codename: str
    raw_content: str
    entries: Tuple[SourceEntry, ...] = ()

    @property
    def logical_name(self) -> str:
        """逻辑仓库名: 同一仓库的 .list 与 .sources 共享同一个名字"""
        if self.path.name == "sources.list":
            return "debian"
        return self.path.stem

    @property
    def is_structured(self) -> bool:
        return self.format is DeclarationFormat.STRUCTURED

    def mentions(self, token: str) -> bool:
        return token in self.raw_content


@dataclass(frozen=True)
class BackupSnapshot:
    """某一天的备份快照"""
    date: date
    root_path: Path
    captured_files: FrozenSet[Tuple[Path, Path]] = frozenset()  # (原路径, 副本路径)
    created: bool = False  # 本次调用是否新建了快照


@dataclass(frozen=True)
class PatchMarker:
    """补丁标记，存在即表示补丁已应用"""
    token: str

    def render(self, comment_prefix: str = "#", comment_suffix: str = "") -> str:
        line = f"{comment_prefix} upgradef-marker: {self.token}"
        if comment_suffix:
            line = f"{line} {comment_suffix}"
        return line

    def present_in(self, content: str) -> bool:
        return self.token in content


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Finding:
    """预检工具给出的一条结论"""
    severity: Severity
    message: str


@dataclass
class PreflightResult:
    """预检结果，含错误级别结论即阻止迁移"""
    findings: List[Finding] = field(default_factory=list)

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity is Severity.ERROR]

    @property
    def ok(self) -> bool:
        return not self.errors


class ConvergenceState(Enum):
    UNSUPPORTED = "unsupported"
    AT_SOURCE = "at-source"
    MIGRATING = "migrating"
    AT_TARGET = "at-target"
    POST_INSTALL = "post-install"
    DONE = "done"


@dataclass
class RunReport:
    """一次收敛运行的结果"""
    states: List[ConvergenceState] = field(default_factory=list)
    changed_paths: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)  # 提示性警告
    soft_failures: List[str] = field(default_factory=list)  # 单步失败，不中断运行
    snapshot: Optional[BackupSnapshot] = None
    facts: Optional[SystemFactSet] = None

    def enter(self, state: ConvergenceState):
        self.states.append(state)

    def changed(self, path: Path):
        if path not in self.changed_paths:
            self.changed_paths.append(path)

    @property
    def final_state(self) -> Optional[ConvergenceState]:
        return self.states[-1] if self.states else None
