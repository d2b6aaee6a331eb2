"""
备份管理模块

在改动仓库配置前为其创建快照。每个自然日最多一个快照: 当天已有快照时
直接返回，不再复制。快照先写入 .partial 目录，完成后整体改名，
因此最终目录存在即表示快照完整。
"""
import json
import shutil
from datetime import date
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from loguru import logger

from .. import config
from ..config import UpgradeContext
from .models import BackupSnapshot


class BackupManager:
    """按日期幂等的备份管理器"""

    def __init__(self, context: UpgradeContext, today: Optional[Callable[[], date]] = None):
        """
        初始化备份管理器

        参数:
            context: 运行配置
            today: 返回当前日期的函数，测试中用于模拟日期
        """
        self.context = context
        self.today = today or date.today

    def snapshot_dir(self, day: date) -> Path:
        return self.context.backup_dir / f"{config.BACKUP_DIR_PREFIX}{day.isoformat()}"

    def ensure_backup(self, sources: Iterable[Path]) -> BackupSnapshot:
        """确保当天的快照存在

        参数:
            sources: 需要备份的文件或目录，不存在的路径会被跳过

        返回:
            BackupSnapshot: 当天的快照（已存在时原样返回）
        """
        day = self.today()
        final_dir = self.snapshot_dir(day)

        if final_dir.exists():
            logger.info(f"今日备份已存在，跳过: {final_dir}")
            return self._load(day, final_dir)

        partial_dir = final_dir.with_name(final_dir.name + ".partial")
        partial_dir.mkdir(parents=True, exist_ok=True)

        captured: List[Tuple[Path, Path]] = []
        for source in sources:
            source = Path(source)
            if not source.exists():
                logger.debug(f"备份源不存在，跳过: {source}")
                continue
            captured.extend(self._copy(source, partial_dir))

        self._write_manifest(partial_dir, day, captured)
        partial_dir.rename(final_dir)

        files = frozenset(
            (original, final_dir / copied.relative_to(partial_dir))
            for original, copied in captured
        )
        logger.info(f"已备份 {len(files)} 个文件到 {final_dir}")
        return BackupSnapshot(date=day, root_path=final_dir, captured_files=files, created=True)

    def _copy(self, source: Path, target_root: Path) -> List[Tuple[Path, Path]]:
        """复制单个文件或整个目录，返回 (原路径, 副本路径) 列表"""
        target = target_root / source.name
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
            pairs = []
            for copied in sorted(target.rglob("*")):
                if copied.is_file():
                    pairs.append((source / copied.relative_to(target), copied))
            return pairs

        shutil.copy2(source, target)
        return [(source, target)]

    def _write_manifest(self, snapshot_dir: Path, day: date, captured: List[Tuple[Path, Path]]):
        data = {
            'date': day.isoformat(),
            'files': [
                {'original': str(original), 'copy': str(copied.relative_to(snapshot_dir))}
                for original, copied in captured
            ],
        }
        with open(snapshot_dir / config.BACKUP_MANIFEST, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def _load(self, day: date, snapshot_dir: Path) -> BackupSnapshot:
        """从清单恢复已有快照"""
        manifest = snapshot_dir / config.BACKUP_MANIFEST
        files: Set[Tuple[Path, Path]] = set()
        if manifest.exists():
            try:
                with open(manifest, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                for item in data.get('files', []):
                    files.add((Path(item['original']), snapshot_dir / item['copy']))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"备份清单格式错误 {manifest}: {e}")
        else:
            logger.warning(f"备份目录缺少清单文件: {snapshot_dir}")
        return BackupSnapshot(date=day, root_path=snapshot_dir, captured_files=frozenset(files))

    def list_snapshots(self) -> List[Path]:
        """列出所有已完成的快照目录"""
        root = self.context.backup_dir
        if not root.exists():
            return []
        return sorted(
            p for p in root.glob(f"{config.BACKUP_DIR_PREFIX}*")
            if p.is_dir() and not p.name.endswith(".partial")
        )
