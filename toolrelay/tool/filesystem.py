from __future__ import annotations

import fnmatch
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20


class FileSystemTools:
    """Local file operations exposed to the model.

    Every method returns a human-readable string, the format the
    conversation loop feeds back to the model.
    """

    def create_folder(self, path: str) -> str:
        Path(path).mkdir(parents=True, exist_ok=True)
        return f"Folder created: {path}"

    def read_files(self, paths: List[str], options: Optional[Dict[str, Any]] = None) -> str:
        encoding = (options or {}).get("encoding", "utf-8")
        if len(paths) == 1:
            return Path(paths[0]).read_text(encoding=encoding)

        sections = []
        for path in paths:
            try:
                content = Path(path).read_text(encoding=encoding)
            except OSError as e:
                content = f"Error reading file: {e}"
            sections.append(f"File: {path}\n{'=' * (len(path) + 6)}\n{content}")
        return "\n\n".join(sections)

    def write_to_file(self, path: str, content: str) -> str:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"Content written to file: {path}\n\n{content}"

    def apply_diff_edit(self, path: str, original_text: str, updated_text: str) -> str:
        target = Path(path)
        content = target.read_text(encoding="utf-8")
        if original_text not in content:
            raise ValueError(f"Original text not found in file: {path}")
        target.write_text(content.replace(original_text, updated_text, 1), encoding="utf-8")
        return f"Successfully applied diff edit to file: {path}"

    def move_file(self, source: str, destination: str) -> str:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(source, destination)
        return f"File moved: {source} to {destination}"

    def copy_file(self, source: str, destination: str) -> str:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        if os.path.isdir(source):
            shutil.copytree(source, destination)
        else:
            shutil.copy2(source, destination)
        return f"File copied: {source} to {destination}"

    def list_files(self, path: str, options: Optional[Dict[str, Any]] = None) -> str:
        options = options or {}
        ignore = options.get("ignore_files") or options.get("ignoreFiles") or []
        max_depth = options.get("max_depth") or options.get("maxDepth") or DEFAULT_MAX_DEPTH

        root = Path(path)
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")

        lines = [f"Directory Structure:\n\n{root.name or path}/"]
        self._walk(root, ignore, max_depth, 1, lines)
        return "\n".join(lines)

    def _walk(
        self, directory: Path, ignore: List[str], max_depth: int, depth: int, lines: List[str]
    ) -> None:
        if depth > max_depth:
            return
        try:
            entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        except PermissionError:
            logger.warning("Permission denied while listing %s", directory)
            return
        for entry in entries:
            if any(fnmatch.fnmatch(entry.name, pattern) for pattern in ignore):
                continue
            indent = "  " * depth
            if entry.is_dir():
                lines.append(f"{indent}{entry.name}/")
                self._walk(entry, ignore, max_depth, depth + 1, lines)
            else:
                lines.append(f"{indent}{entry.name}")

    def think(self, thought: str) -> str:
        return thought
