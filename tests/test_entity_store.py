from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from conftest import make_cast, make_shots
from scene_studio.orchestrator.contracts import ProjectDocument, read_project, write_project
from scene_studio.orchestrator.entities import (
    Character,
    Collection,
    Costume,
    HistoryEntry,
    Location,
    Shot,
    push_history,
)
from scene_studio.orchestrator.entity_store import InMemoryEntityStore
from scene_studio.orchestrator.models import JobKind, TaskDescriptor, VideoStatus

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Entity Store"),
]


def _store() -> InMemoryEntityStore:
    characters, locations = make_cast()
    return InMemoryEntityStore(shots=make_shots(), characters=characters, locations=locations)


def test_merge_applies_to_latest_version() -> None:
    store = _store()
    stale = store.get("s1")
    store.apply_update("s1", storyboard_url="first://s1")

    # A late completion computed from the stale copy must not erase the first update.
    store.merge("s1", lambda current: {"video_url": "video://s1"})

    current = store.get("s1")
    assert stale.storyboard_url is None
    assert current.storyboard_url == "first://s1"
    assert current.video_url == "video://s1"


def test_update_of_missing_entity_is_dropped() -> None:
    store = _store()

    assert store.apply_update("ghost", storyboard_url="x") is None
    assert [shot.id for shot in store.get_snapshot(Collection.SHOTS)] == [
        "s1",
        "s2",
        "s3",
        "s4",
        "s5",
    ]


def test_listener_sees_each_change_and_empty_merge_is_noop() -> None:
    changes: list[tuple[Collection, str]] = []
    store = InMemoryEntityStore(
        locations=[Location(id="l1", name="Harbor")],
        listener=lambda collection, entity: changes.append((collection, entity.id)),
    )

    store.apply_update("l1", description="Foggy pier")
    store.merge("l1", lambda _current: {})

    assert changes == [(Collection.LOCATIONS, "l1")]


def test_in_progress_indicators() -> None:
    store = _store()
    store.mark_in_progress("c1", "description")
    store.mark_in_progress("s1", "storyboard")

    assert store.in_progress() == {"c1", "s1"}
    assert store.in_progress("storyboard") == {"s1"}

    store.clear_in_progress("s1", "storyboard")
    assert store.in_progress() == {"c1"}

    started_at = datetime(2026, 3, 1, tzinfo=UTC)
    store.restore_in_progress([TaskDescriptor("l2", "primary_image", started_at)])
    assert store.in_progress() == {"l2"}


def test_group_keys() -> None:
    shots = {shot.id: shot for shot in make_shots()}

    assert shots["s1"].group_key == shots["s2"].group_key == "Harbor"
    assert shots["s5"].group_key == "__solo_s5"
    assert Character(id="c1", name="Mara").group_key == "c1"


def test_missing_kinds() -> None:
    characters, _ = make_cast()
    mara = characters[0]

    assert mara.missing_kinds() == (
        JobKind.DESCRIPTION,
        JobKind.PRIMARY_IMAGE,
        JobKind.VARIANT_IMAGE,
    )
    done = Character(
        id="c2",
        name="Tomas",
        description="Fisherman",
        image_url="img://c2",
        costumes=(Costume(id="c2-x", label="  "),),
    )
    assert done.missing_kinds() == ()
    assert Shot(id="s1", shot_number=1, video_status=VideoStatus.QUEUED).missing_kinds() == (
        JobKind.STORYBOARD,
    )
    for status in (VideoStatus.PREPARING, VideoStatus.PROCESSING):
        waiting = Shot(id="s1", shot_number=1, video_status=status)
        assert JobKind.VIDEO_JOB not in waiting.missing_kinds()
    assert Shot(id="s1", shot_number=1, video_status=VideoStatus.FAILED).missing_kinds() == (
        JobKind.STORYBOARD,
        JobKind.VIDEO_JOB,
    )


def test_push_history_skips_empty_and_duplicate_urls() -> None:
    history = (HistoryEntry(url="a.png", created_at="t0"),)

    assert push_history(history, None, created_at="t1") == history
    assert push_history(history, "a.png", created_at="t1") == history
    assert [entry.url for entry in push_history(history, "b.png", created_at="t1")] == [
        "a.png",
        "b.png",
    ]


def test_costume_replacement_keeps_other_costumes() -> None:
    characters, _ = make_cast()
    mara = characters[0]

    costumes = mara.with_costume("c1-gown", image_url="gown.png")

    assert [costume.image_url for costume in costumes] == [None, "gown.png"]
    assert mara.costume("c1-missing") is None


def test_project_roundtrip_preserves_unknown_fields(tmp_path: Path) -> None:
    path = tmp_path / "project.json"
    path.write_text(
        json.dumps(
            {
                "schema_version": 1,
                "title": "Pilot",
                "aspect_ratio": "16:9",
                "shots": [
                    {
                        "id": "s1",
                        "shot_number": 1,
                        "location_name": "Harbor",
                        "camera": "dolly",
                        "video_status": "processing",
                        "video_task_id": "t-1",
                    },
                ],
                "characters": [
                    {"id": "c1", "name": "Mara", "costumes": [{"id": "k1", "label": "Coat"}]},
                ],
                "locations": [],
            },
        ),
        "utf-8",
    )

    document = read_project(path)
    store = document.to_store()
    store.apply_update("s1", storyboard_url="sb://s1")
    document.refresh_from(store)
    write_project(path, document)
    saved = json.loads(path.read_text("utf-8"))

    assert document.shots[0].extra == {"camera": "dolly"}
    assert document.shots[0].video_status == VideoStatus.PROCESSING
    assert saved["aspect_ratio"] == "16:9"
    assert saved["shots"][0]["camera"] == "dolly"
    assert saved["shots"][0]["storyboard_url"] == "sb://s1"
    assert saved["characters"][0]["costumes"][0]["label"] == "Coat"


def test_project_rejects_unknown_schema_version() -> None:
    with pytest.raises(ValueError, match="schema_version"):
        ProjectDocument.from_dict({"schema_version": 99})
