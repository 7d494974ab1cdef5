"""
Repository Workspace

Scoped access to a repository's files for one indexing run: clones remote
URLs into a temporary directory (always removed on exit), uses local paths
in place (never removed), reads HEAD, and discovers Python files.

Uses GitPython for all git operations.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path

import git

logger = logging.getLogger("knowledge-graph.indexer.repository")

# Directories and files to skip during indexing
SKIP_DIRS = {
    "__pycache__", ".git", ".tox", ".mypy_cache", ".pytest_cache",
    "node_modules", ".eggs", "venv", ".venv", "env",
    "build", "dist", ".nox", "site-packages",
}

SKIP_FILES = {
    "setup.py", "conftest.py", "noxfile.py",
}


def is_remote(repository_ref: str) -> bool:
    return repository_ref.startswith(("http://", "https://", "git@", "ssh://", "git://"))


class RepositoryWorkspace:
    """
    Async context manager yielding a checkout of ``repository_ref``.

        async with RepositoryWorkspace(url, branch) as ws:
            commit = await ws.head_commit()
            for path in await ws.discover_python_files():
                text = await ws.read_file(path)
    """

    def __init__(
        self,
        repository_ref: str,
        branch: str | None = None,
        clone_dir: str | None = None,
        skip_dirs: set[str] | None = None,
    ):
        self._ref = repository_ref
        self._branch = branch or "main"
        self._clone_dir = clone_dir
        self._skip_dirs = skip_dirs if skip_dirs is not None else SKIP_DIRS
        self._temp_dir: Path | None = None
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("Workspace is not open, use 'async with'")
        return self._path

    async def __aenter__(self) -> "RepositoryWorkspace":
        if is_remote(self._ref):
            self._path = await self._clone()
        else:
            path = Path(self._ref).expanduser().resolve()
            if not path.is_dir():
                raise FileNotFoundError(f"Repository path does not exist: {self._ref}")
            self._path = path
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the temporary clone directory, if this workspace created one."""
        if self._temp_dir is not None and self._temp_dir.exists():
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            logger.info("Cleaned up temporary clone directory: %s", self._temp_dir)
        self._temp_dir = None

    async def _clone(self) -> Path:
        base = Path(self._clone_dir) if self._clone_dir else None
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        self._temp_dir = Path(tempfile.mkdtemp(prefix="kg-repo-", dir=base))
        repo_name = self._ref.rstrip("/").split("/")[-1].replace(".git", "") or "repo"
        repo_path = self._temp_dir / repo_name

        logger.info("Cloning %s (branch: %s) to %s...", self._ref, self._branch, repo_path)
        try:
            await asyncio.to_thread(
                git.Repo.clone_from,
                self._ref,
                str(repo_path),
                branch=self._branch,
                multi_options=["--single-branch", "--depth=1"],
            )
        except BaseException:
            self.cleanup()
            raise
        logger.info("Repository cloned successfully")
        return repo_path

    async def head_commit(self) -> str:
        """HEAD commit hash, or a content fingerprint for non-git directories."""
        try:
            repo = git.Repo(self.path, search_parent_directories=False)
            return repo.head.commit.hexsha
        except (git.InvalidGitRepositoryError, git.NoSuchPathError, ValueError):
            return await self.content_fingerprint()

    async def content_fingerprint(self) -> str:
        """Hash of every discovered file's path and content."""

        def _fingerprint() -> str:
            digest = hashlib.sha256()
            for rel_path in self._walk():
                digest.update(rel_path.encode("utf-8"))
                digest.update((self.path / rel_path).read_bytes())
            return f"content:{digest.hexdigest()[:40]}"

        return await asyncio.to_thread(_fingerprint)

    def _walk(self) -> list[str]:
        python_files = []
        for root, dirs, files in os.walk(self.path):
            dirs[:] = [
                d for d in dirs
                if d not in self._skip_dirs and not d.endswith(".egg-info")
            ]
            for filename in files:
                if not filename.endswith(".py") or filename in SKIP_FILES:
                    continue
                full_path = Path(root) / filename
                python_files.append(str(full_path.relative_to(self.path)).replace("\\", "/"))
        python_files.sort()
        return python_files

    async def discover_python_files(self) -> list[str]:
        """All Python files, relative to the repository root, sorted."""
        python_files = await asyncio.to_thread(self._walk)
        logger.info("Discovered %d Python files", len(python_files))
        return python_files

    async def read_file(self, file_path: str) -> str:
        """Read a file's text. Undecodable bytes raise UnicodeDecodeError."""
        full_path = self.path / file_path
        return await asyncio.to_thread(full_path.read_text, encoding="utf-8")
