import pytest

from errors import CyclicMove, InvalidRequest, NameConflict, NotFound, TreeDepthExceeded
from folders import descendant_ids
from models import Folder

MIB = 1024 * 1024


def test_create_and_get(services, account_id):
    folder = services.folders.create(account_id, "Documents")
    assert services.folders.get(account_id, folder.id).name == "Documents"


def test_sibling_name_conflict(services, account_id):
    services.folders.create(account_id, "Photos")
    with pytest.raises(NameConflict) as exc:
        services.folders.create(account_id, "Photos")
    assert exc.value.code == "NAME_CONFLICT"


def test_same_name_under_different_parents(services, account_id):
    a = services.folders.create(account_id, "a")
    b = services.folders.create(account_id, "b")
    services.folders.create(account_id, "x", parent_id=a.id)
    services.folders.create(account_id, "x", parent_id=b.id)


def test_folder_name_collides_with_file(services, account_id, upload):
    upload(account_id, "notes", MIB)
    with pytest.raises(NameConflict):
        services.folders.create(account_id, "notes")


def test_deleted_sibling_frees_the_name(services, account_id):
    old = services.folders.create(account_id, "reports")
    services.folders.remove(account_id, old.id)
    services.folders.create(account_id, "reports")


def test_other_account_sees_not_found(services, account_id):
    folder = services.folders.create(account_id, "private")
    with pytest.raises(NotFound):
        services.folders.get(account_id + 1, folder.id)


def test_invalid_names(services, account_id):
    for name in ("", "   ", "a/b", "..", "x" * 256):
        with pytest.raises(InvalidRequest):
            services.folders.create(account_id, name)


def test_rename_checks_siblings(services, account_id):
    services.folders.create(account_id, "a")
    b = services.folders.create(account_id, "b")
    with pytest.raises(NameConflict):
        services.folders.rename(account_id, b.id, "a")
    assert services.folders.rename(account_id, b.id, "c").name == "c"


def test_move_into_own_descendant_is_cyclic(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B", parent_id=a.id)
    c = services.folders.create(account_id, "C", parent_id=b.id)

    with pytest.raises(CyclicMove) as exc:
        services.folders.move(account_id, a.id, c.id)
    assert exc.value.code == "CYCLIC_MOVE"
    with pytest.raises(CyclicMove):
        services.folders.move(account_id, a.id, a.id)

    assert services.folders.get(account_id, a.id).parent_id is None


def test_move_to_other_branch_and_root(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B")
    c = services.folders.create(account_id, "C", parent_id=a.id)

    assert services.folders.move(account_id, c.id, b.id).parent_id == b.id
    assert services.folders.move(account_id, c.id, None).parent_id is None


def test_move_into_deleted_subtree_fails_closed(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B", parent_id=a.id)
    other = services.folders.create(account_id, "other")
    with services.Session() as session:
        # Simulate a concurrent delete that stamped only the ancestor so far.
        session.get(Folder, a.id).deleted_at = session.get(Folder, a.id).created_at
        session.commit()

    with pytest.raises(NotFound):
        services.folders.move(account_id, other.id, b.id)


def test_breadcrumbs_run_root_to_leaf(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B", parent_id=a.id)
    c = services.folders.create(account_id, "C", parent_id=b.id)

    trail = services.folders.breadcrumbs(account_id, c.id)
    assert [f.name for f in trail] == ["A", "B", "C"]


def test_remove_cascades_to_descendants(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B", parent_id=a.id)
    c = services.folders.create(account_id, "C", parent_id=b.id)
    keep = services.folders.create(account_id, "keep")

    removed = services.folders.remove(account_id, a.id)

    assert sorted(removed) == sorted([a.id, b.id, c.id])
    for folder_id in (a.id, b.id, c.id):
        with pytest.raises(NotFound):
            services.folders.get(account_id, folder_id)
    services.folders.get(account_id, keep.id)


def test_list_children(services, account_id, upload):
    parent = services.folders.create(account_id, "parent")
    services.folders.create(account_id, "sub", parent_id=parent.id)
    upload(account_id, "inside.txt", MIB, folder_id=parent.id)

    listing = services.folders.list_children(account_id, parent.id)
    assert [f["name"] for f in listing["folders"]] == ["sub"]
    assert [f["name"] for f in listing["files"]] == ["inside.txt"]
    assert listing["total"] == 2


def test_list_children_pages_across_folders_then_files(services, account_id, upload):
    parent = services.folders.create(account_id, "parent")
    for name in ("a", "b", "c"):
        services.folders.create(account_id, name, parent_id=parent.id)
    for name in ("x.txt", "y.txt"):
        upload(account_id, name, MIB, folder_id=parent.id)

    pages = [services.folders.list_children(account_id, parent.id, page=n, limit=2) for n in (1, 2, 3)]

    assert [[f["name"] for f in p["folders"] + p["files"]] for p in pages] == [
        ["a", "b"], ["c", "x.txt"], ["y.txt"],
    ]
    assert [p["hasMore"] for p in pages] == [True, True, False]
    assert all(p["total"] == 5 for p in pages)


def test_update_checks_final_name_in_destination(services, account_id):
    a = services.folders.create(account_id, "a")
    b = services.folders.create(account_id, "b")
    services.folders.create(account_id, "taken", parent_id=b.id)

    with pytest.raises(NameConflict):
        services.folders.update(account_id, a.id, name="taken", parent_id=b.id)

    unchanged = services.folders.get(account_id, a.id)
    assert (unchanged.name, unchanged.parent_id) == ("a", None)

    moved = services.folders.update(account_id, a.id, name="free", parent_id=b.id)
    assert (moved.name, moved.parent_id) == ("free", b.id)


def test_corrupted_parent_cycle_is_bounded(services, account_id):
    a = services.folders.create(account_id, "A")
    b = services.folders.create(account_id, "B", parent_id=a.id)
    other = services.folders.create(account_id, "other")
    with services.Session() as session:
        session.get(Folder, a.id).parent_id = b.id
        session.commit()

    with pytest.raises(TreeDepthExceeded):
        services.folders.breadcrumbs(account_id, b.id)
    with pytest.raises(TreeDepthExceeded):
        services.folders.move(account_id, other.id, a.id)
    with services.Session() as session:
        assert descendant_ids(session, a.id) == [b.id]
