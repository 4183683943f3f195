"""
Idempotent, declarative patching of key/value configuration files.

Given a target ``(key, value, section)``, the patcher edits a file so that
exactly one active line in that scope sets the key to the value, keeping
every other line as it was. Unchanged files are not rewritten and get no
backup.

Match states and actions:

- NO_MATCH: append ``key<sep>value`` at the end of the scope (creating the
  section header when the section is missing).
- COMMENTED_ONLY: APPEND policy adds a new active line and leaves the
  commented examples alone; UNCOMMENT policy rewrites the last commented
  occurrence in place.
- ACTIVE_MATCH_SAME_VALUE: nothing to do.
- ACTIVE_MATCH_DIFFERENT_VALUE: rewrite the last active occurrence's value
  in place and comment out its continuation lines. Earlier duplicates are
  reported, not touched.
"""

import difflib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .backup import BackupManager
from .document import ConfigDocument, Dialect, LineKind, parse_line
from .errors import (
    ConfigFileNotFoundError,
    HostGuardError,
    InvalidInputError,
    ParseAmbiguousError,
    PartialMultiFileWriteError,
)
from .fileio import atomic_write, file_lock, read_text
from .locator import ConfigTarget, MatchState, insertion_index, locate, match_state
from .logs import logger

PathLike = Union[str, Path]

DISABLED_SUFFIX = " (disabled)"


class CommentedPolicy(Enum):
    APPEND = "append"
    UNCOMMENT = "uncomment"


@dataclass
class TargetOutcome:
    target: ConfigTarget
    state: MatchState
    changed: bool
    line_index: Optional[int] = None
    duplicates: List[int] = field(default_factory=list)


@dataclass
class PatchResult:
    """
    Outcome of one read-modify-write cycle on a file.

    ``changed`` is False when the file already satisfied every target; no
    backup is taken in that case.
    """

    path: Path
    changed: bool
    backup_path: Optional[Path] = None
    outcomes: List[TargetOutcome] = field(default_factory=list)
    before: str = ""
    after: str = ""

    @property
    def state(self) -> Optional[MatchState]:
        """Match state seen for the first target."""
        return self.outcomes[0].state if self.outcomes else None

    @property
    def duplicates(self) -> List[int]:
        return [index for outcome in self.outcomes for index in outcome.duplicates]

    def diff(self) -> str:
        return "".join(
            difflib.unified_diff(
                self.before.splitlines(keepends=True),
                self.after.splitlines(keepends=True),
                fromfile=str(self.path),
                tofile=str(self.path),
            )
        )


@dataclass
class LayeredPatchResult:
    primary: PatchResult
    override: PatchResult
    shadows: List[PatchResult] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(r.changed for r in (self.primary, self.override, *self.shadows))


# ----------------------------------------------------------------
# In-memory operations
# ----------------------------------------------------------------
def validate_target(target: ConfigTarget, dialect: Dialect) -> None:
    """
    Refuse targets whose rendered line would not parse back as themselves.

    Such a target (a key with spaces, a value with a newline or with an
    inline comment marker) would be appended again on every run.
    """
    value = target.value.strip()
    rendered = dialect.render(target.key, value)
    line = parse_line(rendered, dialect, target.section)
    if "\n" in target.value or "\r" in target.value or not (
        line.active and line.key == target.key and line.value == value
    ):
        raise InvalidInputError(
            f"Cannot write {target.key!r} = {target.value!r} as a {dialect.name} setting: "
            "it would not read back as the same key and value"
        )


def _disable_continuation(doc: ConfigDocument, index: int) -> List[int]:
    follows = doc.continuation(index)
    for follow in follows:
        doc.replace_line(follow, "#" + doc.lines[follow].raw)
    return follows


def apply_target(
    doc: ConfigDocument,
    target: ConfigTarget,
    policy: CommentedPolicy = CommentedPolicy.APPEND,
) -> TargetOutcome:
    """Mutate ``doc`` so ``target`` holds. Returns what was found and done."""
    validate_target(target, doc.dialect)
    location = locate(doc, target.key, target.section)
    if location.malformed:
        raise ParseAmbiguousError(
            f"Cannot safely set {target.key}: unrecognised line(s) "
            f"{', '.join(str(i + 1) for i in location.malformed)} start with that key"
        )
    state = match_state(doc, location, target.value)
    outcome = TargetOutcome(target=target, state=state, changed=False)

    if location.duplicates:
        outcome.duplicates = list(location.duplicates)
        logger.warning(
            "Duplicate active '%s' lines at %s; the last one is authoritative",
            target.key,
            ", ".join(str(i + 1) for i in location.active),
        )

    if state is MatchState.ACTIVE_MATCH_SAME_VALUE:
        outcome.line_index = location.effective
        return outcome

    if state is MatchState.ACTIVE_MATCH_DIFFERENT_VALUE:
        index = location.effective
        _disable_continuation(doc, index)
        doc.lines[index] = doc.lines[index].with_value(target.value.strip())
        outcome.line_index = index
        outcome.changed = True
        return outcome

    rendered = doc.dialect.render(target.key, target.value.strip())

    if state is MatchState.COMMENTED_ONLY and policy is CommentedPolicy.UNCOMMENT:
        index = location.commented[-1]
        doc.replace_line(index, doc.lines[index].indent + rendered)
        outcome.line_index = index
        outcome.changed = True
        return outcome

    index = insertion_index(doc, location)
    if index is None:
        # Section missing: open it at the end of the file.
        if doc.lines and doc.lines[-1].kind is not LineKind.BLANK:
            doc.insert(len(doc.lines), "")
        doc.insert(len(doc.lines), f"[{target.section}]")
        index = len(doc.lines)
    doc.insert(index, rendered)
    outcome.line_index = index
    outcome.changed = True
    return outcome


def neutralize_key(
    doc: ConfigDocument, key: str, section: Optional[str] = None
) -> List[int]:
    """
    Comment out every active ``key`` line in a scope.

    ``Port 22`` becomes ``# Port 22 (disabled)``, and continuation lines of
    the value get a leading ``#``. Matching is on the whole parsed key, so
    ``Port`` never touches ``PortForwarding``.

    Returns:
        Indices of the setting lines that were disabled
    """
    location = locate(doc, key, section)
    for index in location.active:
        _disable_continuation(doc, index)
        line = doc.lines[index]
        doc.replace_line(index, f"{line.indent}# {line.raw.strip()}{DISABLED_SUFFIX}")
    return list(location.active)


# ----------------------------------------------------------------
# File operations
# ----------------------------------------------------------------
class ConfigPatcher:
    """
    Applies targets to files on disk: lock, read, patch, back up, write.

    Args:
        backups: Backup manager shared by the whole run
        lock_dir: Directory for advisory lock files, or None for no locking
    """

    def __init__(
        self, backups: Optional[BackupManager] = None, lock_dir: Optional[PathLike] = None
    ) -> None:
        self.backups = backups or BackupManager()
        self.lock_dir = lock_dir

    def load(self, path: PathLike, dialect: Dialect, create: bool = False) -> ConfigDocument:
        path = Path(path)
        if not path.exists():
            if not create:
                raise ConfigFileNotFoundError(f"Configuration file not found: {path}")
            return ConfigDocument(dialect=dialect)
        return ConfigDocument.parse(read_text(path), dialect)

    def plan(
        self,
        path: PathLike,
        targets: Sequence[ConfigTarget],
        dialect: Dialect,
        policy: CommentedPolicy = CommentedPolicy.APPEND,
        create: bool = False,
    ) -> PatchResult:
        """Compute the patch without touching the file."""
        path = Path(path)
        before = read_text(path) if path.exists() else ""
        doc = self.load(path, dialect, create=create)
        outcomes = [apply_target(doc, target, policy) for target in targets]
        changed = any(outcome.changed for outcome in outcomes)
        after = doc.serialize() if changed else before
        return PatchResult(
            path=path, changed=changed, outcomes=outcomes, before=before, after=after
        )

    def patch(
        self,
        path: PathLike,
        targets: Sequence[ConfigTarget],
        dialect: Dialect,
        policy: CommentedPolicy = CommentedPolicy.APPEND,
        create: bool = False,
    ) -> PatchResult:
        """Apply ``targets`` to ``path`` in one read-modify-write cycle."""
        path = Path(path)
        with file_lock(path, self.lock_dir):
            result = self.plan(path, targets, dialect, policy=policy, create=create)
            if not result.changed:
                logger.info("%s already up to date", path)
                return result
            self._commit(result)
        for outcome in result.outcomes:
            if outcome.changed:
                logger.info("%s: set %s (%s)", path, outcome.target.describe(), outcome.state.value)
        return result

    def set_value(
        self,
        path: PathLike,
        key: str,
        value: str,
        dialect: Dialect,
        section: Optional[str] = None,
        **kwargs,
    ) -> PatchResult:
        return self.patch(path, [ConfigTarget(key, value, section)], dialect, **kwargs)

    def edit(
        self,
        path: PathLike,
        dialect: Dialect,
        func: Callable[[ConfigDocument], bool],
        create: bool = False,
    ) -> PatchResult:
        """
        Run an arbitrary document edit under the same lock/backup/write cycle.

        ``func`` mutates the document in place and returns whether it
        changed anything.
        """
        path = Path(path)
        with file_lock(path, self.lock_dir):
            before = read_text(path) if path.exists() else ""
            doc = self.load(path, dialect, create=create)
            result = PatchResult(path=path, changed=False, before=before, after=before)
            if func(doc):
                after = doc.serialize()
                if after != before:
                    result.changed = True
                    result.after = after
                    self._commit(result)
        return result

    def neutralize(
        self, path: PathLike, key: str, dialect: Dialect, section: Optional[str] = None
    ) -> PatchResult:
        """Comment out active ``key`` lines in ``path``."""
        disabled: List[int] = []

        def _disable(doc: ConfigDocument) -> bool:
            disabled.extend(neutralize_key(doc, key, section))
            return bool(disabled)

        result = self.edit(path, dialect, _disable)
        if result.changed:
            logger.info(
                "%s: disabled %s on line(s) %s",
                path,
                key,
                ", ".join(str(i + 1) for i in disabled),
            )
        return result

    def patch_layered(
        self,
        primary: PathLike,
        override: PathLike,
        target: ConfigTarget,
        dialect: Dialect,
        shadows: Sequence[PathLike] = (),
    ) -> LayeredPatchResult:
        """
        Make ``target`` effective when ``override`` takes precedence over ``primary``.

        Step 1 disables the key in the primary file, then in every ``shadows``
        file (other files read alongside the override that could win over
        it), and checks that each took. Step 2 writes the value into the
        override file, creating it if needed. There is no multi-file commit,
        so a failure after an earlier file changed raises
        PartialMultiFileWriteError naming the files already written.
        """
        validate_target(target, dialect)
        override = Path(override)
        disabled: List[PatchResult] = []
        completed: List[str] = []

        for path in [Path(primary), *(Path(p) for p in shadows)]:
            try:
                result = self.neutralize(path, target.key, dialect, target.section)
                leftover = locate(self.load(path, dialect), target.key, target.section)
                if leftover.active:
                    raise HostGuardError(
                        f"Could not disable {target.key} in {path}: still active on line(s) "
                        f"{', '.join(str(i + 1) for i in leftover.active)}"
                    )
            except (HostGuardError, OSError) as e:
                if completed:
                    raise PartialMultiFileWriteError(completed, str(path), e) from e
                raise
            disabled.append(result)
            if result.changed:
                completed.append(str(path))

        try:
            override_result = self.patch(override, [target], dialect, create=True)
        except (HostGuardError, OSError) as e:
            if completed:
                raise PartialMultiFileWriteError(completed, str(override), e) from e
            raise
        return LayeredPatchResult(
            primary=disabled[0], override=override_result, shadows=disabled[1:]
        )

    def _commit(self, result: PatchResult) -> None:
        result.backup_path = self.backups.backup(result.path)
        atomic_write(result.path, result.after)
