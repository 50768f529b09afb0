"""Tests for the transaction coordinator."""

from __future__ import annotations

import logging

import pytest
from sqlalchemy import MetaData, func, inspect, select

from change_trail.core.exceptions import (
    AuditWriteFailure,
    ConfigurationError,
    ValidationFailure,
)
from change_trail.core.settings import TrailSettings
from change_trail.features.changelog import (
    REDACTED,
    AuditRepository,
    ChangeSet,
    ChangeTrail,
    ChangeType,
    SchemaRegistry,
)
from tests.fixtures.models import Category, Comment, Folder, Note, Resource

COORDINATOR_LOGGER = "change_trail.features.changelog.coordinator"


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def _history(trail: ChangeTrail, session, resource_id) -> list:
    return list(await AuditRepository(trail.table).get_entity_history(session, "resources", resource_id))


# ============================================================================
# Insert
# ============================================================================


@pytest.mark.asyncio
async def test_insert_bare_entity_records_empty_payload(trail, db_session):
    """Test inserting an entity without a change set logs an empty payload."""
    resource = await trail.insert_and_log(Resource(name="name"), "cowboy")

    assert resource.id is not None
    [record] = await _history(trail, db_session, resource.id)
    assert record.actor_id == "cowboy"
    assert record.resource == "resources"
    assert record.resource_id == str(resource.id)
    assert record.change_type == ChangeType.INSERT
    assert record.payload == {}


@pytest.mark.asyncio
async def test_insert_changeset_records_declared_changes(trail, db_session):
    """Test inserting a change set logs exactly its changes."""
    resource = await trail.insert_and_log(ChangeSet(Resource(), {"name": "My name"}), "cowboy")

    assert resource.name == "My name"
    [record] = await _history(trail, db_session, resource.id)
    assert record.payload == {"name": "My name"}


@pytest.mark.asyncio
async def test_insert_empty_changeset_records_empty_payload(trail, db_session):
    """Test a change set without changes logs an empty payload."""
    resource = await trail.insert_and_log(ChangeSet(Resource(), {}), "cowboy")

    [record] = await _history(trail, db_session, resource.id)
    assert record.payload == {}


@pytest.mark.asyncio
async def test_insert_redacts_denylisted_fields(trail, db_session):
    """Test redacted fields are persisted but hidden in the audit payload."""
    changeset = ChangeSet(Resource(), {"name": "My name", "password": "secret"})

    resource = await trail.insert_and_log(changeset, "cowboy")

    assert resource.password == "secret"
    [record] = await _history(trail, db_session, resource.id)
    assert record.payload == {"name": "My name", "password": REDACTED}


@pytest.mark.asyncio
async def test_insert_records_embeds_and_associations(trail, db_session):
    """Test nested change sets appear as nested payload entries."""
    attrs = {
        "name": "My name",
        "not_permitted": "ignored",
        "tags": ["apple", "banana"],
        "coordinates": {"latitude": 30.52333, "longitude": 50.45},
    }
    changeset = ChangeSet.cast(Resource(), attrs, permitted=["name", "tags", "coordinates"])
    changeset.put_change("data", ChangeSet({}, {"key2": "key2"}))
    changeset.put_change("items", [ChangeSet({}, {"name": "Morgan"}), ChangeSet({}, {"name": "Freeman"})])
    changeset.put_change("category", ChangeSet(Category(), {"title": "test"}))
    changeset.put_change(
        "comments",
        [ChangeSet(Comment(), {"title": "wow"}), ChangeSet(Comment(), {"title": "very impressive"})],
    )

    resource = await trail.insert_and_log(changeset, "cowboy")

    assert resource.data == {"key2": "key2"}
    assert resource.items == [{"name": "Morgan"}, {"name": "Freeman"}]
    assert resource.category.title == "test"
    assert await _count(db_session, Comment) == 2

    [record] = await _history(trail, db_session, resource.id)
    assert record.payload == {
        "name": "My name",
        "tags": ["apple", "banana"],
        "coordinates": {"latitude": 30.52333, "longitude": 50.45},
        "data": {"key2": "key2"},
        "items": [{"name": "Morgan"}, {"name": "Freeman"}],
        "category": {"title": "test"},
        "comments": [{"title": "wow"}, {"title": "very impressive"}],
    }


@pytest.mark.asyncio
async def test_insert_invalid_changeset_writes_nothing(trail, db_session):
    """Test an invalid change set is rejected before anything is written."""
    changeset = ChangeSet(Resource(), {"name": "name"}).add_error("name", "is reserved")

    with pytest.raises(ValidationFailure) as exc_info:
        await trail.insert_and_log(changeset, "cowboy")

    assert exc_info.value.subject is changeset
    assert exc_info.value.errors == [("name", "is reserved")]
    assert await _count(db_session, Resource) == 0
    assert await AuditRepository(trail.table).count(db_session) == 0


@pytest.mark.asyncio
async def test_insert_rejected_by_storage_raises_validation_failure(trail, db_session):
    """Test a constraint violation surfaces as ValidationFailure with no audit record."""
    with pytest.raises(ValidationFailure) as exc_info:
        await trail.insert_and_log(Comment(), "cowboy")

    assert exc_info.value.cause is not None
    assert await _count(db_session, Comment) == 0
    assert await AuditRepository(trail.table).count(db_session) == 0


@pytest.mark.asyncio
async def test_insert_unregistered_entity_rolls_back(db_session, settings):
    """Test missing schema metadata aborts the whole unit."""
    registry = SchemaRegistry()
    registry.register_model(Comment)
    trail = ChangeTrail(db_session, registry, settings)

    with pytest.raises(ConfigurationError):
        await trail.insert_and_log(Resource(name="name"), "cowboy")

    assert await _count(db_session, Resource) == 0


@pytest.mark.asyncio
async def test_insert_without_actor_rolls_back(trail, db_session):
    """Test an audit record that cannot be built aborts the primary insert."""
    with pytest.raises(ConfigurationError):
        await trail.insert_and_log(Resource(name="name"), None)

    assert await _count(db_session, Resource) == 0


# ============================================================================
# Update / Upsert
# ============================================================================


@pytest.mark.asyncio
async def test_update_records_changes(trail, db_session):
    """Test update logs the changed fields only."""
    resource = await trail.insert_and_log(Resource(name="name"), "cowboy")

    updated = await trail.update_and_log(
        ChangeSet(resource, {"name": "My new name"}), "cowboy"
    )

    assert updated.name == "My new name"
    records = await _history(trail, db_session, resource.id)
    assert [r.change_type for r in records] == [ChangeType.INSERT, ChangeType.UPDATE]
    assert records[-1].payload == {"name": "My new name"}


@pytest.mark.asyncio
async def test_update_of_unsaved_entity_raises(trail, db_session):
    """Test updating an entity that was never persisted is rejected."""
    with pytest.raises(ValidationFailure):
        await trail.update_and_log(ChangeSet(Resource(), {"name": "x"}), "cowboy")

    assert await AuditRepository(trail.table).count(db_session) == 0


@pytest.mark.asyncio
async def test_upsert_inserts_new_entity(trail, db_session):
    """Test upsert of a new entity inserts it and records an upsert."""
    resource = await trail.upsert_and_log(ChangeSet(Resource(), {"name": "fresh"}), "cowboy")

    assert await _count(db_session, Resource) == 1
    [record] = await _history(trail, db_session, resource.id)
    assert record.change_type == ChangeType.UPSERT
    assert record.payload == {"name": "fresh"}


@pytest.mark.asyncio
async def test_upsert_updates_persisted_entity(trail, db_session):
    """Test upsert of a persisted entity updates it in place."""
    resource = await trail.insert_and_log(Resource(name="name"), "cowboy")

    await trail.upsert_and_log(ChangeSet(resource, {"name": "renamed"}), "cowboy")

    assert await _count(db_session, Resource) == 1
    stored = await db_session.scalar(select(Resource.name).where(Resource.id == resource.id))
    assert stored == "renamed"
    records = await _history(trail, db_session, resource.id)
    assert records[-1].change_type == ChangeType.UPSERT


# ============================================================================
# Delete
# ============================================================================


@pytest.mark.asyncio
async def test_delete_records_full_snapshot(trail, db_session):
    """Test delete logs every field, with unloaded relations as null."""
    resource = await trail.insert_and_log(Resource(name="name", tags=["a"]), "cowboy")
    resource_id = resource.id

    deleted = await trail.delete_and_log(resource, "cowboy")

    assert deleted is resource
    assert await _count(db_session, Resource) == 0
    records = await _history(trail, db_session, resource_id)
    assert [r.change_type for r in records] == [ChangeType.INSERT, ChangeType.DELETE]
    assert records[-1].resource_id == str(resource_id)
    assert records[-1].payload == {
        "id": resource_id,
        "name": "name",
        "password": REDACTED,
        "tags": ["a"],
        "coordinates": None,
        "data": None,
        "items": None,
        "comments": None,
        "category": None,
    }


@pytest.mark.asyncio
async def test_delete_ignores_declared_changes(trail, db_session):
    """Test a change set passed to delete still records the snapshot."""
    resource = await trail.insert_and_log(Resource(name="name"), "cowboy")

    await trail.delete_and_log(ChangeSet(resource, {"name": "ignored"}), "cowboy")

    records = await _history(trail, db_session, resource.id)
    assert records[-1].payload["name"] == "name"


@pytest.mark.asyncio
async def test_delete_snapshot_taken_before_cascade_loads_relations(trail, db_session):
    """Test relations loaded by the delete cascade are still recorded as null."""
    folder = Folder(name="inbox", notes=[Note(title="first")])
    db_session.add(folder)
    await db_session.commit()
    folder_id = folder.id

    db_session.expunge_all()
    folder = await db_session.scalar(select(Folder).where(Folder.id == folder_id))
    await db_session.commit()
    assert "notes" in inspect(folder).unloaded

    await trail.delete_and_log(folder, "cowboy")

    assert await _count(db_session, Note) == 0
    [record] = await AuditRepository(trail.table).get_entity_history(db_session, "folders", folder_id)
    assert record.change_type == ChangeType.DELETE
    assert record.payload == {"id": folder_id, "name": "inbox", "notes": None}


# ============================================================================
# Audit failure handling
# ============================================================================


@pytest.mark.asyncio
async def test_oversized_actor_id_is_logged_and_primary_commits(trail, db_session, caplog):
    """Test an actor id longer than its column only loses the audit record."""
    with caplog.at_level(logging.ERROR, logger=COORDINATOR_LOGGER):
        resource = await trail.insert_and_log(Resource(name="name"), "x" * 300)

    assert resource.id is not None
    assert await _count(db_session, Resource) == 1
    assert await AuditRepository(trail.table).count(db_session) == 0

    errors = [r for r in caplog.records if r.name == COORDINATOR_LOGGER and r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "actor_id" in errors[0].getMessage()


@pytest.mark.asyncio
async def test_audit_failure_is_logged_and_primary_commits(db_session, registry, caplog):
    """Test a failing audit insert emits one diagnostic and keeps the mutation."""
    trail = ChangeTrail(
        db_session,
        registry,
        TrailSettings(audit_table="missing_audit_log"),
        metadata=MetaData(),
    )

    with caplog.at_level(logging.ERROR, logger=COORDINATOR_LOGGER):
        resource = await trail.insert_and_log(Resource(name="name"), "cowboy")

    assert resource.id is not None
    assert await _count(db_session, Resource) == 1

    errors = [r for r in caplog.records if r.name == COORDINATOR_LOGGER and r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "Failed to store changes in audit log" in errors[0].getMessage()
    assert "'cowboy'" in errors[0].getMessage()

    default_repo = AuditRepository(ChangeTrail(db_session, registry, TrailSettings()).table)
    assert await default_repo.count(db_session) == 0


@pytest.mark.asyncio
async def test_audit_failure_reported_in_result(db_session, registry):
    """Test the lower level entry point exposes the swallowed failure."""
    from change_trail.features.changelog import Mutation, Operation

    trail = ChangeTrail(
        db_session,
        registry,
        TrailSettings(audit_table="missing_audit_log"),
        metadata=MetaData(),
    )

    result = await trail.execute(Mutation(Operation.INSERT, Resource(name="name"), "cowboy"))

    assert not result.logged
    assert isinstance(result.audit_error, AuditWriteFailure)
    assert result.audit_error.resource == "resources"


@pytest.mark.asyncio
async def test_audit_failure_raises_under_raise_policy(db_session, registry):
    """Test the raise policy aborts the primary mutation too."""
    trail = ChangeTrail(
        db_session,
        registry,
        TrailSettings(audit_table="missing_audit_log", audit_failure_policy="raise"),
        metadata=MetaData(),
    )

    with pytest.raises(AuditWriteFailure):
        await trail.insert_and_log(Resource(name="name"), "cowboy")

    assert await _count(db_session, Resource) == 0


# ============================================================================
# Log only
# ============================================================================


@pytest.mark.asyncio
async def test_log_records_supplied_changes(trail, db_session):
    """Test logging changes for an entity persisted elsewhere."""
    resource = Resource(name="imported")
    db_session.add(resource)
    await db_session.commit()

    returned = await trail.log(resource, {"name": "imported", "password": "secret"}, "importer")

    assert returned is resource
    [record] = await _history(trail, db_session, resource.id)
    assert record.actor_id == "importer"
    assert record.change_type == ChangeType.INSERT
    assert record.payload == {"name": "imported", "password": REDACTED}


@pytest.mark.asyncio
async def test_log_only_with_explicit_change_type(trail, db_session):
    """Test log-only honours an explicit change type."""
    resource = Resource(name="imported")
    db_session.add(resource)
    await db_session.commit()

    result = await trail.log_only(resource, None, "importer", change_type=ChangeType.UPDATE)

    assert result.logged
    assert result.record.change_type == ChangeType.UPDATE
    assert result.record.payload == {}
