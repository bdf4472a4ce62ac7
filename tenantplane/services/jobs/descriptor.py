from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import re

from tenantplane.core.errors import JobConfigurationError
from tenantplane.domain.events import required_fields


_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class JobDescriptor:
    """Static binding of one incoming detail type to one unit of work."""

    name: str
    incoming: str
    input_fields: tuple[str, ...]
    output_fields: tuple[str, ...] = ()
    outgoing: str | None = None


def _schema_for(
    detail_type: str,
    *,
    role: str,
    descriptor: JobDescriptor,
    schema: Mapping[str, tuple[str, ...]] | None,
) -> tuple[str, ...]:
    if schema is not None and detail_type in schema:
        return tuple(schema[detail_type])
    try:
        return required_fields(detail_type)
    except KeyError as exc:
        raise JobConfigurationError(
            f"Job {descriptor.name}: unknown {role} detail type {detail_type}"
        ) from exc


def validate_descriptor(
    descriptor: JobDescriptor, schema: Mapping[str, tuple[str, ...]] | None = None
) -> None:
    """Fail fast on field mappings that could not be satisfied at dispatch time."""
    for field_name in (*descriptor.input_fields, *descriptor.output_fields):
        # Field names become shell variable names for script jobs.
        if not _FIELD_NAME.match(field_name):
            raise JobConfigurationError(f"Job {descriptor.name}: invalid field name {field_name!r}")
    if len(set(descriptor.input_fields)) != len(descriptor.input_fields):
        raise JobConfigurationError(f"Job {descriptor.name}: duplicate input fields")

    incoming_fields = _schema_for(
        descriptor.incoming, role="incoming", descriptor=descriptor, schema=schema
    )
    extra = [name for name in descriptor.input_fields if name not in incoming_fields]
    if extra:
        raise JobConfigurationError(
            f"Job {descriptor.name}: inputs not carried by {descriptor.incoming}: {', '.join(extra)}"
        )
    missing = [name for name in incoming_fields if name not in descriptor.input_fields]
    if missing:
        raise JobConfigurationError(
            f"Job {descriptor.name}: required {descriptor.incoming} fields not mapped: {', '.join(missing)}"
        )

    if descriptor.outgoing is None:
        if descriptor.output_fields:
            raise JobConfigurationError(
                f"Job {descriptor.name}: output fields declared without an outgoing event"
            )
        return
    outgoing_fields = _schema_for(
        descriptor.outgoing, role="outgoing", descriptor=descriptor, schema=schema
    )
    # tenantId is always forwarded from the incoming event.
    produced = set(descriptor.output_fields) | {"tenantId"}
    uncovered = [name for name in outgoing_fields if name not in produced]
    if uncovered:
        raise JobConfigurationError(
            f"Job {descriptor.name}: outputs do not cover {descriptor.outgoing}: {', '.join(uncovered)}"
        )
