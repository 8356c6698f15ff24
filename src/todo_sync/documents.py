"""Layout of the managed markdown documents.

Every remote project is mirrored to one markdown document with YAML
frontmatter: the inbox to ``Inbox.md``, other projects under
``Projects/`` (nested by parent project). Tasks are grouped by section,
nested by parent task, and sorted by priority, due date and order.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import frontmatter
import yaml

from .models import ParsedTask, Project, Section, Task
from .task_format import (
    DESCRIPTION_INDENT,
    SUBTASK_INDENT,
    format_description,
    format_task_line,
    parse_document,
)


logger = logging.getLogger(__name__)

GENERATOR = "todo-sync"

INVALID_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')


def sanitize_file_name(name: str) -> str:
    """Replace characters that are not allowed in file names."""
    cleaned = INVALID_FILENAME_RE.sub("_", name).strip().strip(".")
    return cleaned or "Untitled"


def read_metadata(text: str) -> Dict[str, Any]:
    """Frontmatter of a document, or an empty dict if it has none or it is invalid."""
    try:
        return dict(frontmatter.loads(text).metadata)
    except (yaml.YAMLError, ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Ignoring unreadable frontmatter: {e}")
        return {}


def is_managed(text: str) -> bool:
    return read_metadata(text).get("generated_by") == GENERATOR


@dataclass
class RenderedDocument:
    """A document ready to be written, with where each task ended up."""

    path: str
    text: str
    project_id: Optional[str] = None
    placements: Dict[str, int] = field(default_factory=dict)
    additions: List[Tuple[ParsedTask, int]] = field(default_factory=list)


def sort_key(task: Task):
    """Priority first (urgent on top), then due date, then remote order."""
    return (
        -task.priority,
        task.due_date or date.max,
        task.order,
    )


class DocumentLayout:
    """Decides where tasks go and renders managed documents."""

    def __init__(self, inbox_document: str = "Inbox.md", projects_folder: str = "Projects"):
        self.inbox_document = inbox_document
        self.projects_folder = projects_folder.strip("/")
        self.logger = logging.getLogger(__name__)

    def document_path(self, project: Project, projects: Dict[str, Project]) -> str:
        """Path of the document mirroring a project."""
        if project.is_inbox:
            return self.inbox_document

        parts = [sanitize_file_name(project.name)]
        parent_id = project.parent_id
        visited = {project.id}
        while parent_id and parent_id in projects and parent_id not in visited:
            parent = projects[parent_id]
            visited.add(parent_id)
            parts.insert(0, sanitize_file_name(parent.name))
            parent_id = parent.parent_id

        parts[-1] = f"{parts[-1]}.md"
        return "/".join([self.projects_folder] + parts)

    def assign_documents(self, tasks: List[Task], projects: List[Project]) -> Dict[str, Tuple[Optional[Project], List[Task]]]:
        """Group tasks by the document they belong to.

        Tasks whose project is unknown land in the inbox document.
        """
        projects_by_id = {project.id: project for project in projects}
        inbox = next((project for project in projects if project.is_inbox), None)

        assigned: Dict[str, Tuple[Optional[Project], List[Task]]] = {}
        for project in projects:
            assigned[self.document_path(project, projects_by_id)] = (project, [])
        if inbox is None:
            assigned.setdefault(self.inbox_document, (None, []))

        for task in tasks:
            project = projects_by_id.get(task.project_id)
            if project is None:
                path = self.document_path(inbox, projects_by_id) if inbox else self.inbox_document
            else:
                path = self.document_path(project, projects_by_id)
            assigned[path][1].append(task)

        return assigned

    @staticmethod
    def build_task_tree(tasks: List[Task]) -> Tuple[List[Task], Dict[str, List[Task]]]:
        """Split tasks into sorted roots and sorted children keyed by parent id."""
        ids = {task.id for task in tasks}
        roots = []
        children: Dict[str, List[Task]] = {}
        for task in tasks:
            if task.parent_id and task.parent_id in ids:
                children.setdefault(task.parent_id, []).append(task)
            else:
                roots.append(task)
        for siblings in children.values():
            siblings.sort(key=lambda t: t.order)
        roots.sort(key=sort_key)
        return roots, children

    def render(self, path: str, project: Optional[Project], tasks: List[Task],
               sections: Optional[List[Section]] = None,
               preserved: Optional[Dict[str, ParsedTask]] = None,
               additions: Optional[List[ParsedTask]] = None,
               today: Optional[date] = None,
               title: Optional[str] = None) -> RenderedDocument:
        """Render one managed document.

        Args:
            path: Document path
            project: Project mirrored by the document
            tasks: Remote tasks belonging to the document
            sections: Sections of the project
            preserved: Local lines to keep verbatim, keyed by task id
            additions: New local lines (no id yet) appended at the end
            today: Reference day for overdue rendering
            title: Heading used when there is no project

        Returns:
            RenderedDocument with the line of every task
        """
        preserved = preserved or {}
        additions = additions or []
        heading = project.name if project else (title or path.rsplit("/", 1)[-1][:-3])

        roots, children = self.build_task_tree(tasks)
        body = [f"# {heading}", ""]

        section_order = sorted(sections or [], key=lambda s: s.order)
        known_sections = {section.id for section in section_order}
        unsectioned = [t for t in roots if t.section_id not in known_sections]
        for task in unsectioned:
            body.extend(self._render_task(task, children, preserved, today, 0))
        if unsectioned:
            body.append("")

        for section in section_order:
            in_section = [t for t in roots if t.section_id == section.id]
            if not in_section:
                continue
            body.extend([f"## {section.name}", ""])
            for task in in_section:
                body.extend(self._render_task(task, children, preserved, today, 0))
            body.append("")

        addition_rows = []
        for added in additions:
            addition_rows.append(len(body))
            body.extend(self._reindent(added.block, 0))
        if additions:
            body.append("")

        content = "\n".join(body).rstrip()
        metadata = {"generated_by": GENERATOR, "title": heading}
        if project is not None:
            metadata["project_id"] = project.id
        post = frontmatter.Post(content, **metadata)
        text = frontmatter.dumps(post).rstrip("\n") + "\n"

        rendered = RenderedDocument(path=path, text=text,
                                    project_id=project.id if project else None)
        # The body is the tail of the rendered text.
        offset = len(text.splitlines()) - len(content.splitlines())
        addition_lines = set()
        for added, row in zip(additions, addition_rows):
            rendered.additions.append((added, offset + row))
            addition_lines.add(offset + row)

        for parsed in parse_document(text, path):
            if parsed.task_id is not None and parsed.line_number not in addition_lines:
                rendered.placements.setdefault(parsed.task_id, parsed.line_number)
        return rendered

    def _render_task(self, task: Task, children: Dict[str, List[Task]],
                     preserved: Dict[str, ParsedTask], today: Optional[date], indent: int) -> List[str]:
        local = preserved.get(task.id)
        if local is not None:
            lines = self._reindent(local.block, indent)
        else:
            lines = [format_task_line(task, today=today, indent=indent)]
            lines.extend(format_description(task.description, indent))
        for child in children.get(task.id, []):
            lines.extend(self._render_task(child, children, preserved, today, indent + SUBTASK_INDENT))
        return lines

    @staticmethod
    def _reindent(block: List[str], indent: int) -> List[str]:
        """Re-indent a preserved task line and its description lines."""
        if not block:
            return []
        lines = [" " * indent + block[0].lstrip()]
        for line in block[1:]:
            lines.append(" " * (indent + DESCRIPTION_INDENT) + line.strip())
        return lines
