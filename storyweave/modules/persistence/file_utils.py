from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import tempfile
from pathlib import Path


def _atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding=encoding,
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as tmp:
        tmp.write(content)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> object | None:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(content)


def _list_entries(path: Path, *, want_dirs: bool, pattern: re.Pattern[str] | None = None) -> list[str]:
    try:
        entries = list(path.iterdir())
    except FileNotFoundError:
        return []
    names = [entry.name for entry in entries if (entry.is_dir() if want_dirs else entry.is_file())]
    if pattern is not None:
        names = [name for name in names if pattern.search(name)]
    return sorted(names)


async def atomic_write_json(path: Path, payload: object) -> None:
    content = json.dumps(payload, ensure_ascii=False, indent=2)
    await asyncio.to_thread(_atomic_write_text, Path(path), content)


async def read_json_file(path: Path) -> object | None:
    return await asyncio.to_thread(_read_json, Path(path))


async def file_exists(path: Path) -> bool:
    return await asyncio.to_thread(Path(path).is_file)


async def directory_exists(path: Path) -> bool:
    return await asyncio.to_thread(Path(path).is_dir)


async def ensure_directory(path: Path) -> None:
    await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)


async def delete_file(path: Path) -> None:
    await asyncio.to_thread(Path(path).unlink, missing_ok=True)


async def delete_directory(path: Path) -> None:
    await asyncio.to_thread(shutil.rmtree, Path(path), ignore_errors=True)


async def list_files(path: Path, pattern: re.Pattern[str] | None = None) -> list[str]:
    return await asyncio.to_thread(_list_entries, Path(path), want_dirs=False, pattern=pattern)


async def list_directories(path: Path) -> list[str]:
    return await asyncio.to_thread(_list_entries, Path(path), want_dirs=True)


__all__ = [
    "atomic_write_json",
    "read_json_file",
    "file_exists",
    "directory_exists",
    "ensure_directory",
    "delete_file",
    "delete_directory",
    "list_files",
    "list_directories",
]
