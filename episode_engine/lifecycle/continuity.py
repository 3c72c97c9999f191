"""
Continuity Notes and Package Export

Pure derivations from locked content. The state machine calls these
inside its lock and amendment transactions and persists the results.
"""

from __future__ import annotations
import json
from typing import List, Sequence, Tuple

from ..contracts.base import Timestamp, derive_id
from ..contracts.events import ContentVersion, ContinuityNote, LockEvent, Unit


LEDGER_VERSION = 1

PACKAGE_ROOT = "{root}/{project_id}/package"
SCRIPT_FILE = "SCRIPT_LATEST.md"
LEDGER_FILE = "CONTINUITY_LEDGER.json"
BINDER_FILE = "SEASON_BINDER.md"


def episode_dir(root: str, project_id: str, index: int) -> str:
    return f"{PACKAGE_ROOT.format(root=root, project_id=project_id)}/episodes/EP{index:02d}"


def script_path(root: str, project_id: str, index: int) -> str:
    return f"{episode_dir(root, project_id, index)}/{SCRIPT_FILE}"


def ledger_path(root: str, project_id: str, index: int) -> str:
    return f"{episode_dir(root, project_id, index)}/{LEDGER_FILE}"


def binder_path(root: str, project_id: str) -> str:
    return f"{PACKAGE_ROOT.format(root=root, project_id=project_id)}/{BINDER_FILE}"


def closing_line(content: str) -> str:
    """Last non-empty line of the content."""
    for line in reversed(content.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def tail_excerpt(content: str, max_chars: int) -> str:
    """
    The trailing max_chars of content, starting on a line boundary when
    one exists inside the window.
    """
    text = content.rstrip()
    if len(text) <= max_chars:
        return text
    window = text[-max_chars:]
    newline = window.find("\n")
    if 0 <= newline < len(window) - 1:
        window = window[newline + 1:]
    return window.strip()


def derive_note(
    unit: Unit,
    version: ContentVersion,
    lock_event: LockEvent,
    max_tail_chars: int
) -> ContinuityNote:
    """Continuity note for one lock event. Deterministic for the same inputs."""
    content = version.content
    return ContinuityNote(
        note_id=derive_id("note", unit.unit_id, lock_event.event_id),
        project_id=unit.project_id,
        unit_id=unit.unit_id,
        unit_index=unit.index,
        content_version_id=version.version_id,
        lock_event_id=lock_event.event_id,
        title=unit.title,
        tail_excerpt=tail_excerpt(content, max_tail_chars),
        closing_line=closing_line(content),
        word_count=len(content.split()),
        line_count=len(content.splitlines()),
        content_hash=version.content_hash,
        created_at=Timestamp.now(),
    )


def render_script(unit: Unit, version: ContentVersion, lock_event: LockEvent) -> str:
    header = [
        f"# EP{unit.index:02d}: {unit.title}",
        "",
        f"<!-- version: {version.version_id} v{version.version_number} -->",
        f"<!-- lock_event: {lock_event.event_id} ({lock_event.kind.value}) -->",
        f"<!-- content_hash: {version.content_hash} -->",
        "",
    ]
    return "\n".join(header) + version.content.rstrip() + "\n"


def render_ledger(note: ContinuityNote, lock_event: LockEvent) -> str:
    ledger = {
        "ledger_version": LEDGER_VERSION,
        "unit_index": note.unit_index,
        "title": note.title,
        "content_version_id": note.content_version_id,
        "content_hash": note.content_hash,
        "lock_event_id": lock_event.event_id,
        "lock_kind": lock_event.kind.value,
        "locked_at": lock_event.locked_at.to_iso(),
        "word_count": note.word_count,
        "line_count": note.line_count,
        "closing_line": note.closing_line,
        "tail_excerpt": note.tail_excerpt,
    }
    return json.dumps(ledger, indent=2, sort_keys=True) + "\n"


def render_binder(project_title: str, entries: Sequence[Tuple[Unit, ContentVersion]]) -> str:
    """Season binder: every locked unit's content in index order."""
    lines: List[str] = [f"# {project_title}: Season Binder", ""]
    for unit, version in sorted(entries, key=lambda entry: entry[0].index):
        lines.append(f"## EP{unit.index:02d}: {unit.title}")
        lines.append("")
        lines.append(version.content.rstrip())
        lines.append("")
    return "\n".join(lines)


def export_files(
    root: str,
    project_title: str,
    unit: Unit,
    version: ContentVersion,
    lock_event: LockEvent,
    note: ContinuityNote,
    locked_entries: Sequence[Tuple[Unit, ContentVersion]]
) -> Tuple[Tuple[str, str], ...]:
    """(path, content) pairs written for one lock event."""
    return (
        (script_path(root, unit.project_id, unit.index), render_script(unit, version, lock_event)),
        (ledger_path(root, unit.project_id, unit.index), render_ledger(note, lock_event)),
        (binder_path(root, unit.project_id), render_binder(project_title, locked_entries)),
    )
