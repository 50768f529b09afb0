"""Schema registry: static per-entity-type metadata consumed by the extractor.

The registry is populated once at configuration time. Afterwards the
extractor and record builder only ever look descriptors up; they never
introspect entity classes at call time.

Example:
    registry = SchemaRegistry()
    registry.register_model(Resource, embeds=[embeds_one("data"), embeds_many("items")])
    registry.register(Point, resource="points", fields=["x", "y"])

    schema = registry.lookup(resource)
    schema.resource       # "resources"
    schema.association("comments").many  # True
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable

from change_trail.core.exceptions import ConfigurationError

from .changes import NOT_LOADED, instance_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EmbedField:
    """Sub-document owned exclusively by its parent entity."""

    name: str
    many: bool = False


@dataclass(frozen=True, slots=True)
class AssociationField:
    """Reference to one or more separately addressable entities."""

    name: str
    many: bool = False


def embeds_one(name: str) -> EmbedField:
    return EmbedField(name, many=False)


def embeds_many(name: str) -> EmbedField:
    return EmbedField(name, many=True)


@dataclass(frozen=True, slots=True)
class EntitySchema:
    """Declarative descriptor of one entity type.

    Attributes:
        entity_type: Class the descriptor applies to (subclasses included).
        resource: Logical table/collection name written to audit records.
        fields: Scalar field names.
        embeds: Embedded sub-document fields.
        associations: Related-entity fields.
        primary_key: Attribute holding the entity identifier.
    """

    entity_type: type
    resource: str
    fields: tuple[str, ...] = ()
    embeds: tuple[EmbedField, ...] = ()
    associations: tuple[AssociationField, ...] = ()
    primary_key: str = "id"
    _relations: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        names = [*self.fields, *(e.name for e in self.embeds), *(a.name for a in self.associations)]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(
                "Field declared more than once",
                details={"resource": self.resource, "fields": duplicates},
            )
        object.__setattr__(self, "_relations", frozenset(a.name for a in self.associations))

    @property
    def field_names(self) -> tuple[str, ...]:
        """Every declared field, scalars first, in declaration order."""
        return (
            *self.fields,
            *(embed.name for embed in self.embeds),
            *(assoc.name for assoc in self.associations),
        )

    def embed(self, name: str) -> EmbedField | None:
        return next((embed for embed in self.embeds if embed.name == name), None)

    def association(self, name: str) -> AssociationField | None:
        return next((assoc for assoc in self.associations if assoc.name == name), None)

    def is_nested(self, name: str) -> bool:
        """Whether ``name`` is an embed or association field."""
        return self.embed(name) is not None or name in self._relations

    def identity(self, entity: Any) -> Any:
        """Primary identifier of ``entity`` (``None`` when not yet assigned)."""
        return getattr(entity, self.primary_key, None)

    def value_of(self, entity: Any, name: str) -> Any:
        """Read a field without triggering a lazy load.

        Returns:
            The field value, or ``NOT_LOADED`` when the data was never loaded.
        """
        state = instance_state(entity)
        if state is not None and name in state.unloaded:
            return NOT_LOADED
        return getattr(entity, name, NOT_LOADED)


class SchemaRegistry:
    """Mapping from entity type to its ``EntitySchema``."""

    def __init__(self, schemas: Iterable[EntitySchema] = ()) -> None:
        self._schemas: dict[type, EntitySchema] = {}
        for schema in schemas:
            self.add(schema)

    def add(self, schema: EntitySchema) -> EntitySchema:
        if schema.entity_type in self._schemas:
            raise ConfigurationError(
                "Entity type already registered",
                details={"entity_type": schema.entity_type.__name__},
            )
        self._schemas[schema.entity_type] = schema
        logger.debug(
            "Registered %s as %s",
            schema.entity_type.__name__,
            schema.resource,
            extra={"resource": schema.resource, "fields": list(schema.field_names)},
        )
        return schema

    def register(
        self,
        entity_type: type,
        *,
        resource: str,
        fields: Iterable[str] = (),
        embeds: Iterable[EmbedField | str] = (),
        associations: Iterable[AssociationField | str] = (),
        primary_key: str = "id",
    ) -> EntitySchema:
        """Register a plain (non-ORM) entity type.

        Bare strings in ``embeds``/``associations`` declare singular fields.
        """
        return self.add(
            EntitySchema(
                entity_type=entity_type,
                resource=resource,
                fields=tuple(fields),
                embeds=tuple(e if isinstance(e, EmbedField) else EmbedField(e) for e in embeds),
                associations=tuple(
                    a if isinstance(a, AssociationField) else AssociationField(a)
                    for a in associations
                ),
                primary_key=primary_key,
            )
        )

    def register_model(
        self,
        model: type,
        *,
        embeds: Iterable[EmbedField | str] = (),
        resource: str | None = None,
    ) -> EntitySchema:
        """Register a SQLAlchemy mapped class from its mapper.

        Column attributes become scalar fields, relationships become
        associations, and the mapped table name becomes the resource. Embeds
        are JSON columns and must be named explicitly.

        Raises:
            ConfigurationError: If ``model`` is not mapped, has a composite
                primary key, or an embed does not name a column attribute.
        """
        try:
            mapper = inspect(model)
        except NoInspectionAvailable as exc:
            raise ConfigurationError(
                "Model is not a mapped class", details={"model": getattr(model, "__name__", model)}
            ) from exc

        if len(mapper.primary_key) != 1:
            raise ConfigurationError(
                "Only single-column primary keys are supported",
                details={"model": model.__name__},
            )

        embed_fields = tuple(e if isinstance(e, EmbedField) else EmbedField(e) for e in embeds)
        columns = [attr.key for attr in mapper.column_attrs]
        unknown = [e.name for e in embed_fields if e.name not in columns]
        if unknown:
            raise ConfigurationError(
                "Embeds must be column attributes", details={"model": model.__name__, "embeds": unknown}
            )

        embed_names = {e.name for e in embed_fields}
        return self.add(
            EntitySchema(
                entity_type=model,
                resource=resource or mapper.local_table.name,
                fields=tuple(name for name in columns if name not in embed_names),
                embeds=embed_fields,
                associations=tuple(
                    AssociationField(rel.key, many=bool(rel.uselist)) for rel in mapper.relationships
                ),
                primary_key=mapper.get_property_by_column(mapper.primary_key[0]).key,
            )
        )

    def find(self, entity_or_type: Any) -> EntitySchema | None:
        """Descriptor for an entity or type, walking the MRO; ``None`` if unknown."""
        cls = entity_or_type if isinstance(entity_or_type, type) else type(entity_or_type)
        for base in cls.__mro__:
            schema = self._schemas.get(base)
            if schema is not None:
                return schema
        return None

    def lookup(self, entity_or_type: Any) -> EntitySchema:
        """Descriptor for an entity or type.

        Raises:
            ConfigurationError: If no descriptor was registered for the type.
        """
        schema = self.find(entity_or_type)
        if schema is None:
            cls = entity_or_type if isinstance(entity_or_type, type) else type(entity_or_type)
            raise ConfigurationError(
                "No schema registered for entity type", details={"entity_type": cls.__name__}
            )
        return schema

    def __contains__(self, entity_or_type: Any) -> bool:
        return self.find(entity_or_type) is not None

    def __len__(self) -> int:
        return len(self._schemas)
