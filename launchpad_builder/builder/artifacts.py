"""Build output collection.

Reads the static export directory into memory as the deployable file set,
keyed the way the hosting provider expects (``/``-prefixed, forward
slashes).
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from pathlib import Path
from typing import Mapping


def collect_artifacts_sync(out_dir: str | Path) -> dict[str, bytes]:
    """Read every regular file under ``out_dir``.

    Symlinks are not followed. An empty directory yields an empty mapping.

    Raises:
        FileNotFoundError: If ``out_dir`` does not exist.
    """
    root = Path(out_dir)
    if not root.is_dir():
        raise FileNotFoundError(f"Build output directory not found: {root}")

    files: dict[str, bytes] = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            full_path = Path(dirpath) / filename
            if full_path.is_symlink() or not full_path.is_file():
                continue
            relative = full_path.relative_to(root).as_posix()
            files["/" + relative] = full_path.read_bytes()
    return files


async def collect_artifacts(out_dir: str | Path) -> dict[str, bytes]:
    """Async wrapper around ``collect_artifacts_sync`` (runs in the default executor)."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, collect_artifacts_sync, out_dir)


def artifact_digests(files: Mapping[str, bytes]) -> dict[str, str]:
    """Map each artifact path to the SHA-1 hex digest of its content.

    This is the ``files`` payload of a deploy-by-digest request; the
    deployment collaborator uploads only the digests the provider asks for.
    """
    return {path: hashlib.sha1(content).hexdigest() for path, content in files.items()}
