"""Manage chain for bringing files under (and out of) dotkeep management.

This module provides the ManageChain class that orchestrates the add,
remove and check workflows: validation, locking, one transaction per file,
structured logging, Rich console output, and the post-commit hook used for
version control.
"""

import os
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import pydantic
import structlog
from rich.console import Console
from rich.markup import escape

from dotkeep.core.backup import BackupStore
from dotkeep.core.errors import (
    AlreadyManaged,
    DotkeepError,
    InvalidPath,
    OperationFailed,
    SourceNotFound,
)
from dotkeep.core.lock import FileLock
from dotkeep.core.operations import add_file_transaction, remove_file_transaction
from dotkeep.core.registry import ManagedFile, Registry, generate_repo_path
from dotkeep.core.settings import DataLayout
from dotkeep.fs.fs_ops import remove_empty_parents
from dotkeep.fs.paths import expand_path, normalize_path
from dotkeep.fs.symlinks import LinkState, symlink_status

OutcomeStatus = Literal["added", "removed", "planned", "skipped", "failed"]
LinkHealth = Literal["ok", "missing", "not_symlink", "broken", "wrong_target"]

PostCommitHook = Callable[[Path, str], Any]


@dataclass
class FileOutcome:
    """Result for one path in a batch.

    Attributes:
        source_path: Path as given, normalized to `~/...` when possible
        status: What happened to the path
        repo_path: Location inside the content store, when known
        reason: Why the path was skipped or failed
    """

    source_path: str
    status: OutcomeStatus
    repo_path: str | None = None
    reason: str | None = None


@dataclass
class ManageReport:
    """Summary of an add or remove batch.

    Attributes:
        operation: `add` or `remove`
        run_id: Identifier bound to every log event of the batch
        dry_run: Whether the batch only planned changes
        outcomes: Per-path results, in input order
        vcs_pending: True when the post-commit hook failed; the filesystem
            changes stand and version control needs a manual commit
    """

    operation: Literal["add", "remove"]
    run_id: str
    dry_run: bool = False
    outcomes: list[FileOutcome] = field(default_factory=list)
    vcs_pending: bool = False

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def committed_count(self) -> int:
        return self.count("added") + self.count("removed")

    @property
    def failed_count(self) -> int:
        return self.count("failed")

    @property
    def skipped_count(self) -> int:
        return self.count("skipped")


@dataclass(frozen=True)
class LinkReport:
    """Health of one registry entry's symlink."""

    source_path: str
    repo_path: str
    status: LinkHealth
    detail: str | None = None


class ManageChain:
    """Orchestrates add/remove/check over a data root.

    Mutating batches hold the data-root lock for their whole duration and
    run one transaction per file, so a failure on one file rolls back that
    file only.
    """

    def __init__(
        self,
        layout: DataLayout,
        registry: Registry | None = None,
        logger: Any = None,
        ui: Console | None = None,
        post_commit: PostCommitHook | None = None,
        lock: FileLock | None = None,
        backups: BackupStore | None = None,
    ) -> None:
        """Initialize manage chain.

        Args:
            layout: Data root layout to operate on
            registry: Optional registry (loaded from the layout by default)
            logger: Optional structlog logger instance
            ui: Optional Rich console for output
            post_commit: Optional hook called as `(store_dir, message)` after
                at least one transaction committed
            lock: Optional lock handle (defaults to one over the data root)
            backups: Optional backup store (defaults to the layout's)
        """
        self._layout = layout
        self._registry = (
            registry if registry is not None else Registry.open(layout.registry_path)
        )
        self._logger = (logger or structlog.get_logger()).bind(
            data_root=str(layout.root)
        )
        self._ui = ui or Console()
        self._post_commit = post_commit
        self._lock = lock or FileLock(layout.root)
        self._backups = backups or BackupStore(layout.backups_dir)

    @property
    def registry(self) -> Registry:
        return self._registry

    # ------------------------------------------------------------------
    # Add
    # ------------------------------------------------------------------

    def add(
        self,
        paths: Sequence[str | os.PathLike[str]],
        category: str | None = None,
        dry_run: bool = False,
    ) -> ManageReport:
        """Move files into the content store and link them back.

        Args:
            paths: Files to bring under management
            category: Optional store directory overriding the derived one
            dry_run: Report what would happen without touching anything

        Returns:
            ManageReport with one outcome per path
        """
        report = ManageReport(
            operation="add", run_id=str(uuid.uuid4()), dry_run=dry_run
        )
        bound_logger = self._logger.bind(operation="add", run_id=report.run_id)

        if dry_run:
            for path in paths:
                outcome, _ = self._plan_add(path, category)
                report.outcomes.append(outcome)
            self._finish(report, bound_logger)
            return report

        self._layout.ensure()
        with self._lock.held():
            # Another process may have changed the registry before we got the lock
            self._registry.load()
            for path in paths:
                outcome, entry = self._plan_add(path, category)
                if entry is not None:
                    outcome = self._run_add(entry, bound_logger)
                report.outcomes.append(outcome)
                self._show_outcome(outcome)

        self._finish(report, bound_logger)
        return report

    def _plan_add(
        self, path: str | os.PathLike[str], category: str | None
    ) -> tuple[FileOutcome, ManagedFile | None]:
        display = self._display_path(path)
        try:
            entry = self._validate_add(path, category)
        except DotkeepError as exc:
            skipped = FileOutcome(
                source_path=display, status="skipped", reason=str(exc)
            )
            return skipped, None
        planned = FileOutcome(
            source_path=entry.source_path, status="planned", repo_path=entry.repo_path
        )
        return planned, entry

    def _validate_add(
        self, path: str | os.PathLike[str], category: str | None
    ) -> ManagedFile:
        source = expand_path(path)

        if os.path.islink(source):
            raise InvalidPath(str(source), "is already a symlink")
        if not source.exists():
            raise SourceNotFound(str(source))
        if not source.is_file():
            raise SourceNotFound(str(source), reason="is not a regular file")

        root = expand_path(self._layout.root)
        if source == root or root in source.parents:
            raise InvalidPath(str(source), "is inside the dotkeep data root")

        if self._registry.is_managed(source):
            raise AlreadyManaged(normalize_path(source))

        repo_path = generate_repo_path(source, category)
        store_path = self._layout.store_path(repo_path)
        if os.path.lexists(store_path):
            raise InvalidPath(
                str(source), f"content store path {repo_path} is already in use"
            )

        try:
            return ManagedFile(source_path=normalize_path(source), repo_path=repo_path)
        except pydantic.ValidationError as exc:
            reason = exc.errors()[0]["msg"]
            raise InvalidPath(
                str(source), f"store path {repo_path!r}: {reason}"
            ) from exc

    def _run_add(self, entry: ManagedFile, bound_logger: Any) -> FileOutcome:
        tx = add_file_transaction(self._layout, self._registry, self._backups, entry)

        try:
            tx.execute_all()
        except OperationFailed as exc:
            bound_logger.warning(
                "manage.item_failed",
                source_path=entry.source_path,
                operation=exc.description,
                error=str(exc.cause),
                rolled_back_cleanly=exc.rolled_back_cleanly,
            )
            return FileOutcome(
                source_path=entry.source_path,
                status="failed",
                repo_path=entry.repo_path,
                reason=str(exc),
            )

        tx.commit()
        bound_logger.info(
            "manage.item", source_path=entry.source_path, repo_path=entry.repo_path
        )
        return FileOutcome(
            source_path=entry.source_path, status="added", repo_path=entry.repo_path
        )

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def remove(
        self,
        paths: Sequence[str | os.PathLike[str]],
        keep_store: bool = False,
        dry_run: bool = False,
    ) -> ManageReport:
        """Replace symlinks with real files and forget the entries.

        Args:
            paths: Managed files to release
            keep_store: Leave the content store copy in place (the file is
                copied back instead of moved)
            dry_run: Report what would happen without touching anything

        Returns:
            ManageReport with one outcome per path
        """
        report = ManageReport(
            operation="remove", run_id=str(uuid.uuid4()), dry_run=dry_run
        )
        bound_logger = self._logger.bind(operation="remove", run_id=report.run_id)

        if dry_run:
            for path in paths:
                report.outcomes.append(self._plan_remove(path))
            self._finish(report, bound_logger)
            return report

        with self._lock.held():
            self._registry.load()
            for path in paths:
                outcome = self._plan_remove(path)
                if outcome.status == "planned":
                    outcome = self._run_remove(outcome, keep_store, bound_logger)
                report.outcomes.append(outcome)
                self._show_outcome(outcome)

        self._finish(report, bound_logger)
        return report

    def _plan_remove(self, path: str | os.PathLike[str]) -> FileOutcome:
        display = self._display_path(path)
        try:
            entry = self._registry.get(path)
            self._validate_remove(entry)
        except DotkeepError as exc:
            return FileOutcome(source_path=display, status="skipped", reason=str(exc))
        return FileOutcome(
            source_path=entry.source_path, status="planned", repo_path=entry.repo_path
        )

    def _validate_remove(self, entry: ManagedFile) -> None:
        source = expand_path(entry.source_path)
        store_path = self._layout.store_path(entry.repo_path)
        status = symlink_status(source, expected_target=store_path)

        if status.state is LinkState.NOT_SYMLINK:
            raise InvalidPath(
                str(source), "a regular file replaced the managed symlink"
            )
        if status.is_symlink and not status.points_to_expected:
            raise InvalidPath(
                str(source), f"symlink points to {status.raw_target}, not the store"
            )

    def _run_remove(
        self, planned: FileOutcome, keep_store: bool, bound_logger: Any
    ) -> FileOutcome:
        entry = self._registry.get(planned.source_path)
        tx = remove_file_transaction(
            self._layout, self._registry, self._backups, entry, keep_store=keep_store
        )

        try:
            tx.execute_all()
        except OperationFailed as exc:
            bound_logger.warning(
                "manage.item_failed",
                source_path=entry.source_path,
                operation=exc.description,
                error=str(exc.cause),
                rolled_back_cleanly=exc.rolled_back_cleanly,
            )
            return FileOutcome(
                source_path=entry.source_path,
                status="failed",
                repo_path=entry.repo_path,
                reason=str(exc),
            )

        tx.commit()

        if not keep_store:
            store_parent = self._layout.store_path(entry.repo_path).parent
            remove_empty_parents(store_parent, self._layout.files_dir)

        bound_logger.info(
            "manage.item", source_path=entry.source_path, repo_path=entry.repo_path
        )
        return FileOutcome(
            source_path=entry.source_path, status="removed", repo_path=entry.repo_path
        )

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    def check(self) -> list[LinkReport]:
        """Report the symlink health of every entry for this platform.

        Read-only: takes no lock and changes nothing.
        """
        self._registry.load()
        reports: list[LinkReport] = []

        for entry in self._registry.for_platform():
            store_path = self._layout.store_path(entry.repo_path)
            status = symlink_status(entry.source_path, expected_target=store_path)
            state = status.state

            if state is LinkState.ABSENT:
                report = LinkReport(entry.source_path, entry.repo_path, "missing")
            elif state is LinkState.NOT_SYMLINK:
                report = LinkReport(entry.source_path, entry.repo_path, "not_symlink")
            elif state is LinkState.BROKEN_SYMLINK:
                report = LinkReport(
                    entry.source_path,
                    entry.repo_path,
                    "broken",
                    detail=status.raw_target,
                )
            elif not status.points_to_expected:
                report = LinkReport(
                    entry.source_path,
                    entry.repo_path,
                    "wrong_target",
                    detail=status.raw_target,
                )
            else:
                report = LinkReport(entry.source_path, entry.repo_path, "ok")
            reports.append(report)

        self._logger.info(
            "manage.check",
            total=len(reports),
            healthy=sum(1 for report in reports if report.status == "ok"),
        )
        return reports

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, report: ManageReport, bound_logger: Any) -> None:
        if not report.dry_run and report.committed_count:
            self._run_post_commit(report, bound_logger)

        bound_logger.info(
            "manage.summary",
            dry_run=report.dry_run,
            total_items=len(report.outcomes),
            committed_count=report.committed_count,
            skipped_count=report.skipped_count,
            failed_count=report.failed_count,
            vcs_pending=report.vcs_pending,
        )

        if report.dry_run:
            for outcome in report.outcomes:
                self._show_outcome(outcome)

    def _run_post_commit(self, report: ManageReport, bound_logger: Any) -> None:
        if self._post_commit is None:
            return

        verb = "Add" if report.operation == "add" else "Remove"
        names = [
            outcome.source_path
            for outcome in report.outcomes
            if outcome.status in ("added", "removed")
        ]
        message = f"{verb} {', '.join(names)}"
        try:
            self._post_commit(self._layout.files_dir, message)
        except Exception as exc:
            # Filesystem changes stand; only the commit is outstanding
            report.vcs_pending = True
            bound_logger.warning("manage.post_commit_failed", error=str(exc))
            self._ui.print(
                "⚠️ [yellow]Changes applied but not committed[/yellow] "
                f"({escape(str(exc))})"
            )

    @staticmethod
    def _display_path(path: str | os.PathLike[str]) -> str:
        try:
            return normalize_path(path)
        except DotkeepError:
            return os.fspath(path)

    def _show_outcome(self, outcome: FileOutcome) -> None:
        """Show Rich output for one path."""
        reason = escape(outcome.reason or "")
        if outcome.status == "added":
            self._ui.print(
                f"✅ [green]ADDED[/green] {outcome.source_path} → {outcome.repo_path}"
            )
        elif outcome.status == "removed":
            self._ui.print(
                f"✅ [green]REMOVED[/green] {outcome.source_path} ← {outcome.repo_path}"
            )
        elif outcome.status == "planned":
            self._ui.print(
                f"🔍 [blue]PLANNED[/blue] {outcome.source_path} ↔ {outcome.repo_path} "
                f"(dry run)"
            )
        elif outcome.status == "skipped":
            self._ui.print(
                f"⚠️ [yellow]SKIPPED[/yellow] {outcome.source_path} ({reason})"
            )
        elif outcome.status == "failed":
            self._ui.print(f"❌ [red]FAILED[/red] {outcome.source_path} ({reason})")
