"""File store collaborators. Only upsert-by-(project, path) is needed."""

import os
import threading

from core.errors import StorageError


class InMemoryFileStore:
    """Latest-write-wins map keyed by (project_id, path)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.files = {}

    def upsert(self, project_id, path, content, version=None):
        with self._lock:
            self.files[(project_id, path)] = {"content": content, "version": version}

    def get(self, project_id, path):
        entry = self.files.get((project_id, path))
        return entry["content"] if entry else None


class DirectoryFileStore:
    """Writes each project's files under root/<project_id>/."""

    def __init__(self, root):
        self.root = root

    def _resolve(self, project_id, path):
        project_dir = os.path.realpath(os.path.join(self.root, project_id or "default"))
        full_path = os.path.join(project_dir, path.lstrip("/"))
        resolved = os.path.realpath(full_path)
        if not resolved.startswith(project_dir + os.sep):
            raise StorageError(f"Path escapes project directory: {path}", retryable=False)
        return resolved

    def upsert(self, project_id, path, content, version=None):
        resolved = self._resolve(project_id, path)
        try:
            os.makedirs(os.path.dirname(resolved), exist_ok=True)
            with open(resolved, "w") as f:
                f.write(content)
        except OSError as exc:
            raise StorageError(f"Could not write {path}: {exc}") from exc

    def get(self, project_id, path):
        resolved = self._resolve(project_id, path)
        if not os.path.exists(resolved):
            return None
        with open(resolved) as f:
            return f.read()


def make_store(settings):
    """DirectoryFileStore under settings["store_dir"] when set, else in memory."""
    root = settings.get("store_dir")
    if root:
        return DirectoryFileStore(root)
    return InMemoryFileStore()
