"""Markdown documentation stored under a repository's ``.claude-ui/`` folder.

Layout::

    <repo>/.claude-ui/project.md
    <repo>/.claude-ui/tasks/task-<id>.md
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CLAUDE_UI_FOLDER = ".claude-ui"
TASKS_FOLDER = "tasks"
PROJECT_DOC_FILE = "project.md"

SECTION_SEPARATOR = "\n\n---\n\n"


def claude_ui_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / CLAUDE_UI_FOLDER


def tasks_folder_path(repo_path: str | Path) -> Path:
    return claude_ui_path(repo_path) / TASKS_FOLDER


def project_doc_path(repo_path: str | Path) -> Path:
    return claude_ui_path(repo_path) / PROJECT_DOC_FILE


def task_doc_path(repo_path: str | Path, task_id: int) -> Path:
    return tasks_folder_path(repo_path) / f"task-{task_id}.md"


def task_doc_relpath(task_id: int) -> str:
    """Repository-relative path of a task's doc, as handed to agents."""
    return f"{CLAUDE_UI_FOLDER}/{TASKS_FOLDER}/task-{task_id}.md"


def ensure_claude_ui_folder(repo_path: str | Path) -> Path:
    """Create ``.claude-ui/`` and ``.claude-ui/tasks/`` if missing."""
    folder = tasks_folder_path(repo_path)
    folder.mkdir(parents=True, exist_ok=True)
    return claude_ui_path(repo_path)


def _read(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8")


def read_project_doc(repo_path: str | Path) -> str:
    """Content of project.md, or an empty string when missing."""
    return _read(project_doc_path(repo_path))


def write_project_doc(repo_path: str | Path, content: str) -> None:
    ensure_claude_ui_folder(repo_path)
    project_doc_path(repo_path).write_text(content, encoding="utf-8")


def read_task_doc(repo_path: str | Path, task_id: int) -> str:
    """Content of the task's markdown, or an empty string when missing."""
    return _read(task_doc_path(repo_path, task_id))


def write_task_doc(repo_path: str | Path, task_id: int, content: str) -> None:
    ensure_claude_ui_folder(repo_path)
    task_doc_path(repo_path, task_id).write_text(content, encoding="utf-8")


def delete_task_doc(repo_path: str | Path, task_id: int) -> bool:
    """Remove the task's markdown. Returns False if it did not exist."""
    path = task_doc_path(repo_path, task_id)
    if not path.exists():
        return False
    path.unlink()
    logger.debug("Deleted task doc %s", path)
    return True


def build_context_prompt(repo_path: str | Path, task_id: int) -> str:
    """Combine project and task docs into a system prompt.

    Each document is trimmed and its section is left out when empty.
    Returns an empty string if neither document has content.
    """
    project_doc = read_project_doc(repo_path).strip()
    task_doc = read_task_doc(repo_path, task_id).strip()

    sections: list[str] = []
    if project_doc:
        sections.append(f"## Project Context\n\n{project_doc}")
    if task_doc:
        sections.append(f"## Task Context\n\n{task_doc}")

    return SECTION_SEPARATOR.join(sections)
