from __future__ import annotations

from codex_bridge.engine.workspace import (
    describe_workspace,
    find_repository_root,
    workspace_id,
)


def test_workspace_id_is_stable_and_short(tmp_path) -> None:
    first = workspace_id(tmp_path)
    assert first == workspace_id(str(tmp_path))
    assert first == workspace_id(tmp_path / ".")
    assert len(first) == 12
    int(first, 16)


def test_different_directories_get_different_ids(tmp_path) -> None:
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.mkdir()
    b.mkdir()
    assert workspace_id(a) != workspace_id(b)


def test_repository_root_is_found_from_a_subdirectory(tmp_path) -> None:
    repo = tmp_path / "repo"
    nested = repo / "src" / "pkg"
    nested.mkdir(parents=True)
    (repo / ".git").mkdir()

    assert find_repository_root(nested) == repo

    identity = describe_workspace(nested)
    assert identity.repository_root == str(repo.resolve())
    assert identity.path == str(nested.resolve())
    assert identity.name == "pkg"
    assert identity.workspace_id == workspace_id(nested)


def test_repository_marker_changes_the_id(tmp_path) -> None:
    before = workspace_id(tmp_path)
    (tmp_path / ".git").mkdir()
    assert workspace_id(tmp_path) != before


def test_directory_outside_a_repository(tmp_path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    if find_repository_root(plain) is None:
        assert describe_workspace(plain).repository_root is None
