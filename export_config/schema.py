"""
Pipeline settings schema.

YAML documents are parsed into these frozen dataclasses by the loader.
Nothing outside ``export_config`` reads YAML or environment variables;
services receive a ``PipelineSettings`` instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings handed to ``init_engine_from_url``."""

    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class ArtifactSettings:
    """Flat-file rendering options."""

    delimiter: str = ","
    line_terminator: str = "\n"
    output_dir: str = "exports"


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpenseTypeDef:
    """How one source type maps onto export records."""

    source_type: str  # per_diem, tuition, travel_cost
    code: str  # PER_DIEM_TRAINING, TUITION_FEE, TRAVEL_COST
    key_prefix: str  # PD, TU, TC
    gl_account: str | None = None
    eligible_statuses: tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineSettings:
    """Root settings object."""

    config_version: int
    default_currency: str
    system_actor_id: str
    expense_types: tuple[ExpenseTypeDef, ...]
    incident_impacts: tuple[str, ...]
    database: DatabaseSettings
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    artifact: ArtifactSettings = field(default_factory=ArtifactSettings)
    checksum: str = ""

    def expense_type_for(self, source_type: str) -> ExpenseTypeDef:
        """
        Raises:
            KeyError: if ``source_type`` has no configured expense type.
        """
        for definition in self.expense_types:
            if definition.source_type == source_type:
                return definition
        raise KeyError(f"No expense type configured for source type {source_type!r}")

    @property
    def source_types(self) -> tuple[str, ...]:
        return tuple(d.source_type for d in self.expense_types)
