"""Repository cache and workspace provisioning."""

from .git import GitClient, GitError
from .manager import RepositoryError, RepositoryManager
from .models import Workspace

__all__ = [
    "GitClient",
    "GitError",
    "RepositoryError",
    "RepositoryManager",
    "Workspace",
]
