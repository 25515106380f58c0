"""
Git backend for the config repository.

Wraps GitPython with the handful of operations the environment manager
needs: stage-everything-and-commit, push, pull, status and history. The git
history is the audit log; there is no separate event store.

All methods are blocking. Async callers run them via asyncio.to_thread.
"""

import logging
import threading
from pathlib import Path

from git import Actor, GitCommandError, InvalidGitRepositoryError, Repo

from envm_common.errors import GitOperationError
from envm_common.models import CommitInfo, GitStatus

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"


class GitRepository:
    """
    The git working tree that backs the config store.

    Operations inside one process are serialized by a lock; concurrent
    processes rely on git's own index locking.
    """

    def __init__(
        self,
        path: str | Path,
        remote_url: str = "",
        branch: str = "main",
        author_name: str = "Environment Manager",
        author_email: str = "env-manager@localhost",
    ):
        """
        Initialize the repository wrapper (does not touch disk).

        Args:
            path: Working tree directory (the data directory)
            remote_url: Remote to push to and pull from; empty for none
            branch: Branch pushed and pulled
            author_name: Author of commits made by the manager
            author_email: Author email of commits made by the manager
        """
        self.path = Path(path)
        self.remote_url = remote_url
        self.branch = branch
        self.actor = Actor(author_name, author_email)
        self._repo: Repo | None = None
        self._lock = threading.RLock()

    @property
    def has_remote(self) -> bool:
        return bool(self.remote_url)

    @property
    def repo(self) -> Repo:
        if self._repo is None:
            self.initialize()
        assert self._repo is not None
        return self._repo

    def initialize(self) -> None:
        """
        Open the repository, creating it (and the origin remote) if needed.

        Raises:
            GitOperationError: If the repository cannot be opened or created
        """
        with self._lock:
            self.path.mkdir(parents=True, exist_ok=True)
            try:
                try:
                    repo = Repo(self.path)
                except InvalidGitRepositoryError:
                    logger.info(f"Initializing git repository in {self.path}")
                    repo = Repo.init(self.path, initial_branch=self.branch)

                # Pull may need to create merge commits
                with repo.config_writer() as config:
                    if not config.has_option("user", "name"):
                        config.set_value("user", "name", self.actor.name)
                    if not config.has_option("user", "email"):
                        config.set_value("user", "email", self.actor.email)

                if self.remote_url:
                    existing = {remote.name: remote for remote in repo.remotes}
                    if REMOTE_NAME not in existing:
                        repo.create_remote(REMOTE_NAME, self.remote_url)
                    elif existing[REMOTE_NAME].url != self.remote_url:
                        existing[REMOTE_NAME].set_url(self.remote_url)
            except GitCommandError as e:
                raise GitOperationError(f"Failed to initialize repository: {e}") from e

            self._repo = repo

    def head_commit(self) -> str | None:
        """Full hash of HEAD, or None before the first commit."""
        with self._lock:
            if not self.repo.head.is_valid():
                return None
            return self.repo.head.commit.hexsha

    def commit_all(self, message: str) -> bool:
        """
        Stage every change in the working tree and commit it.

        Returns:
            True if a commit was created, False if the tree was clean

        Raises:
            GitOperationError: If staging or committing fails
        """
        with self._lock:
            try:
                self.repo.git.add(A=True)
                if not self.repo.git.status("--porcelain").strip():
                    logger.debug("Nothing to commit")
                    return False
                commit = self.repo.index.commit(
                    message, author=self.actor, committer=self.actor
                )
            except GitCommandError as e:
                raise GitOperationError(f"Failed to commit: {e}") from e

        logger.info(f"Committed {commit.hexsha[:7]}: {message}")
        return True

    def push(self) -> bool:
        """
        Push the current branch.

        Returns:
            True if pushed, False if no remote is configured or nothing is committed

        Raises:
            GitOperationError: If the push is rejected or fails
        """
        if not self.has_remote:
            return False

        with self._lock:
            if not self.repo.head.is_valid():
                return False
            try:
                results = self.repo.remote(REMOTE_NAME).push(
                    refspec=f"HEAD:refs/heads/{self.branch}"
                )
                results.raise_if_error()
            except GitCommandError as e:
                raise GitOperationError(f"Failed to push: {e}") from e

        logger.info(f"Pushed to {REMOTE_NAME}/{self.branch}")
        return True

    def pull(self) -> bool:
        """
        Fetch and merge the remote branch.

        Returns:
            True if HEAD moved, False if nothing changed or no remote is configured

        Raises:
            GitOperationError: If fetching or merging fails (e.g. a conflict)
        """
        if not self.has_remote:
            return False

        with self._lock:
            try:
                origin = self.repo.remote(REMOTE_NAME)
                origin.fetch()
                remote_ref = f"{REMOTE_NAME}/{self.branch}"
                if remote_ref not in {ref.name for ref in self.repo.refs}:
                    logger.info(f"Remote branch {remote_ref} does not exist yet")
                    return False

                before = self.head_commit()
                self.repo.git.pull("--no-rebase", "--no-edit", REMOTE_NAME, self.branch)
                after = self.head_commit()
            except GitCommandError as e:
                raise GitOperationError(f"Failed to pull: {e}") from e

        if before != after:
            logger.info(f"Pulled {REMOTE_NAME}/{self.branch}: {before} -> {after}")
            return True
        return False

    def status(self) -> GitStatus:
        """Working tree status (staged, unstaged and untracked files)."""
        with self._lock:
            try:
                output = self.repo.git.status("--porcelain")
            except GitCommandError as e:
                raise GitOperationError(f"Failed to get status: {e}") from e

        changed = [line[3:] for line in output.splitlines() if line.strip()]
        return GitStatus(clean=not changed, changed_files=changed)

    def recent_commits(self, limit: int = 20) -> list[CommitInfo]:
        """Most recent commits on HEAD, newest first."""
        with self._lock:
            if not self.repo.head.is_valid():
                return []
            return [
                CommitInfo(
                    hash=commit.hexsha[:7],
                    message=str(commit.message).strip(),
                    author=commit.author.name or "",
                    date=commit.committed_datetime,
                )
                for commit in self.repo.iter_commits(max_count=limit)
            ]

    def commit_and_push(self, message: str) -> bool:
        """
        Commit all changes and push them if a remote is configured.

        Returns:
            True if a commit was created
        """
        committed = self.commit_all(message)
        if committed:
            self.push()
        return committed
