"""
Shared pytest fixtures for archoverlay tests.

Models are built in memory; storage goes through the dict-backed KV store
unless a test needs SQLite on disk.
"""

import json
from pathlib import Path
from typing import Optional

import pytest

from archoverlay.kv_store import MemoryKeyValueStore
from archoverlay.store import OverlayStore
from archoverlay.types import (
    Element,
    ExternalIdRef,
    ExternalRef,
    Model,
    Relationship,
    TaggedValue,
)


def ext(system: str, id: str, scope: Optional[str] = None) -> ExternalIdRef:
    return ExternalIdRef(system=system, id=id, scope=scope)


def ref(scheme: str, value: str) -> ExternalRef:
    return ExternalRef(scheme=scheme, value=value)


def make_element(id: str, *ext_ids: ExternalIdRef, type: str = "ApplicationComponent",
                 name: str = "", tags: Optional[dict] = None) -> Element:
    return Element(
        id=id,
        type=type,
        name=name or id.upper(),
        external_ids=list(ext_ids),
        tagged_values=[TaggedValue(key=k, value=v) for k, v in (tags or {}).items()],
    )


def make_relationship(id: str, *ext_ids: ExternalIdRef, type: str = "Serving",
                      source: str = "e1", target: str = "e2", tags: Optional[dict] = None) -> Relationship:
    return Relationship(
        id=id,
        type=type,
        name="",
        source_id=source,
        target_id=target,
        external_ids=list(ext_ids),
        tagged_values=[TaggedValue(key=k, value=v) for k, v in (tags or {}).items()],
    )


def make_model(elements=(), relationships=(), name: str = "Test model") -> Model:
    return Model(
        elements={e.id: e for e in elements},
        relationships={r.id: r for r in relationships},
        name=name,
    )


@pytest.fixture
def model() -> Model:
    """
    Small model:
    - e1: unique key x|s|1, shared key x||shared (with e2)
    - e2: shared key only
    - e3: no external ids
    - r1: relationship carrying y||r1
    """
    return make_model(
        elements=[
            make_element("e1", ext("x", "1", "s"), ext("x", "shared"), tags={"owner": "core-team"}),
            make_element("e2", ext("x", "shared"), type="DataObject"),
            make_element("e3"),
        ],
        relationships=[
            make_relationship("r1", ext("y", "r1")),
        ],
    )


@pytest.fixture
def store() -> OverlayStore:
    return OverlayStore()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


class FailingKeyValueStore:
    """KV store whose every operation raises, like a full or locked backend."""

    def get(self, key):
        raise OSError("storage unavailable")

    def set(self, key, value):
        raise OSError("quota exceeded")

    def remove(self, key):
        raise OSError("storage unavailable")


@pytest.fixture
def failing_kv() -> FailingKeyValueStore:
    return FailingKeyValueStore()


def model_json(model: Model) -> dict:
    """JSON document for a model, in the shape the CLI reads."""
    return {
        "name": model.name,
        "elements": [
            {
                "id": e.id,
                "type": e.type,
                "name": e.name,
                "externalIds": [r.to_dict() for r in e.external_ids],
                "taggedValues": [tv.to_dict() for tv in e.tagged_values],
            }
            for e in model.elements.values()
        ],
        "relationships": [
            {
                "id": r.id,
                "type": r.type,
                "sourceElementId": r.source_id,
                "targetElementId": r.target_id,
                "externalIds": [x.to_dict() for x in r.external_ids],
            }
            for r in model.relationships.values()
        ],
    }


@pytest.fixture
def model_file(tmp_path, model) -> Path:
    path = tmp_path / "model.json"
    path.write_text(json.dumps(model_json(model)), encoding="utf-8")
    return path


@pytest.fixture
def cli_runner():
    """Typer CliRunner for invoking commands without a subprocess."""
    from typer.testing import CliRunner

    return CliRunner()
