"""Tests for the filesystem document store and document layout."""

from datetime import date

import pytest

from todo_sync.adapters.vault_store import VaultDocumentStore
from todo_sync.documents import DocumentLayout, is_managed, read_metadata, sanitize_file_name
from todo_sync.models import ParsedTask, Project, Section
from todo_sync.sync.services import DocumentStoreError
from todo_sync.task_format import parse_task_line

from conftest import TODAY, make_task


@pytest.mark.asyncio
class TestVaultDocumentStore:
    """Test reading and writing markdown files under the vault root."""

    async def test_write_read_and_list(self, tmp_path):
        store = VaultDocumentStore(tmp_path, excluded_folders=["System"])

        await store.write("Projects/Work.md", "# Work\n")
        await store.write("Inbox.md", "# Inbox\n")
        await store.write("System/ignored.md", "x")
        (tmp_path / ".obsidian").mkdir()
        (tmp_path / ".obsidian" / "hidden.md").write_text("x", encoding="utf-8")

        assert await store.read("Projects/Work.md") == "# Work\n"
        assert await store.list() == ["Inbox.md", "Projects/Work.md"]
        assert await store.exists("Inbox.md")
        assert not await store.exists("Missing.md")
        assert not list(tmp_path.glob("**/*.tmp"))

    async def test_missing_file_raises(self, tmp_path):
        store = VaultDocumentStore(tmp_path)

        with pytest.raises(DocumentStoreError):
            await store.read("Missing.md")

    async def test_paths_cannot_escape_root(self, tmp_path):
        store = VaultDocumentStore(tmp_path / "vault")

        with pytest.raises(DocumentStoreError):
            await store.write("../outside.md", "x")

    async def test_list_without_root(self, tmp_path):
        assert await VaultDocumentStore(tmp_path / "none").list() == []


class TestDocumentLayout:
    """Test document assignment and rendering."""

    def test_document_paths(self):
        layout = DocumentLayout()
        projects = [
            Project(id="inbox", name="Inbox", is_inbox=True),
            Project(id="p1", name="Work"),
            Project(id="p2", name="Q3: Launch", parent_id="p1"),
        ]

        assigned = layout.assign_documents([make_task("1", "Lost", project_id="unknown")], projects)

        assert sorted(assigned) == ["Inbox.md", "Projects/Work.md", "Projects/Work/Q3_ Launch.md"]
        assert [t.id for t in assigned["Inbox.md"][1]] == ["1"]

    def test_sanitize_file_name(self):
        assert sanitize_file_name('a/b:c*?') == "a_b_c__"
        assert sanitize_file_name("...") == "Untitled"

    def test_render_sections_and_sorting(self):
        layout = DocumentLayout()
        project = Project(id="p1", name="Work")
        tasks = [
            make_task("1", "Low", project_id="p1", order=1),
            make_task("2", "Urgent", project_id="p1", priority=4, order=2),
            make_task("3", "Soon", project_id="p1", due=date(2024, 5, 3), order=3),
            make_task("4", "Sectioned", project_id="p1", section_id="s1"),
        ]

        rendered = layout.render("Projects/Work.md", project, tasks,
                                 sections=[Section(id="s1", name="Next", project_id="p1")], today=TODAY)

        body = rendered.text.split("---\n", 2)[2]
        order = [line for line in body.splitlines() if line.startswith(("- [", "## "))]
        assert [parse_task_line(line).content if line.startswith("- [") else line for line in order] == [
            "Urgent", "Soon", "Low", "## Next", "Sectioned",
        ]
        metadata = read_metadata(rendered.text)
        assert metadata == {"generated_by": "todo-sync", "title": "Work", "project_id": "p1"}
        assert is_managed(rendered.text)

    def test_placements_and_additions(self):
        layout = DocumentLayout()
        added = ParsedTask(content="New thing", block=["  - [ ] New thing", "      with notes"],
                           document_path="Inbox.md", line_number=9)

        rendered = layout.render("Inbox.md", Project(id="inbox", name="Inbox", is_inbox=True),
                                 [make_task("1", "Existing")], additions=[added], today=TODAY)

        lines = rendered.text.splitlines()
        assert "<!-- id:1:" in lines[rendered.placements["1"]]
        (parsed, line_number), = rendered.additions
        assert parsed is added
        assert lines[line_number] == "- [ ] New thing"
        assert lines[line_number + 1] == "    with notes"

    def test_preserved_line_is_kept_verbatim(self):
        layout = DocumentLayout()
        local = ParsedTask(content="Call mom", completed=True, task_id="1",
                           block=["- [x] Call mom 🔴 <!-- id:1:aaaaaaaaaaaa -->"])

        rendered = layout.render("Inbox.md", None, [make_task("1", "Call mom")],
                                 preserved={"1": local}, today=TODAY, title="Inbox")

        assert "- [x] Call mom 🔴 <!-- id:1:aaaaaaaaaaaa -->" in rendered.text.splitlines()

    def test_unmanaged_text(self):
        assert not is_managed("# Notes\n")
        assert read_metadata("---\n: [broken\n---\nbody") == {}
