"""
幂等补丁模块

补丁正文必须包含标记；目标文件中存在标记即视为已应用，不会重复追加。
"""
import os
from pathlib import Path
from typing import Union

from loguru import logger

from .format_migrator import read_text, write_text
from .models import PatchMarker

MarkerLike = Union[PatchMarker, str]


def _token(marker: MarkerLike) -> str:
    return marker.token if isinstance(marker, PatchMarker) else str(marker)


class IdempotentPatcher:
    """只应用一次的文本补丁"""

    def is_applied(self, target_path: Path, marker: MarkerLike) -> bool:
        target_path = Path(target_path)
        return target_path.is_file() and _token(marker) in read_text(target_path)

    def apply_patch(self, target_path: Path, marker: MarkerLike, patch_body: str) -> bool:
        """追加补丁正文

        Args:
            target_path: 目标文件，不存在时什么都不做（依赖的软件可能未安装）
            marker: 补丁标记
            patch_body: 补丁正文，必须包含标记

        Returns:
            bool: 本次是否追加了补丁
        """
        token = _token(marker)
        if token not in patch_body:
            raise ValueError(f"补丁正文不包含标记: {token}")

        target_path = Path(target_path)
        if not target_path.is_file():
            logger.debug(f"补丁目标不存在，跳过: {target_path}")
            return False

        content = read_text(target_path)
        if token in content:
            logger.debug(f"补丁已应用: {target_path} ({token})")
            return False

        separator = "" if not content or content.endswith("\n") else "\n"
        with open(target_path, 'a', encoding='utf-8') as f:
            f.write(separator + patch_body)
        logger.info(f"已应用补丁 {token}: {target_path}")
        return True

    def ensure_artifact(self, path: Path, content: str, mode: int = 0o644) -> bool:
        """创建持久化文件，只看文件是否存在，已存在时不改动

        Returns:
            bool: 本次是否新建了文件
        """
        path = Path(path)
        if path.exists():
            logger.debug(f"文件已存在，跳过: {path}")
            return False

        write_text(path, content)
        os.chmod(path, mode)
        logger.info(f"已创建: {path}")
        return True
