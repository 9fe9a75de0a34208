"""
ProfileService -- saved export configurations.

A profile carries the defaults a batch may inherit: entity and cost-centre
filters, GL account, delimiter and date basis.  Profiles are never deleted;
deactivating one hides it from list_profiles().
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from export_kernel.domain.clock import Clock, SystemClock
from export_kernel.exceptions import ConflictError, ExportProfileNotFoundError
from export_kernel.logging_config import get_logger
from expense_export.domain.audit_details import ProfileSavedDetails
from expense_export.domain.types import (
    BatchScope,
    DateBasis,
    DeliveryMethod,
    ExportFormat,
    ExportProfile,
    ExportType,
)
from expense_export.models.batch import ExportProfileModel
from expense_export.services._batch_helpers import as_uuid
from expense_export.services.auditor import ExportAuditor

logger = get_logger("services.profiles")


def _pick(data: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def profile_from_dict(data: dict[str, Any], profile_id: UUID | None = None) -> ExportProfile:
    """
    Build a profile from a request body (snake_case or camelCase keys).

    Raises:
        KeyError: profile_name or export_type missing.
        ValueError: an enum field or the delimiter is not acceptable.
    """
    name = _pick(data, "profile_name", "profileName")
    export_type = _pick(data, "export_type", "exportType")
    if not name:
        raise KeyError("profile_name")
    if not export_type:
        raise KeyError("export_type")
    delimiter = _pick(data, "delimiter", "delimiter", ",")
    if len(delimiter) != 1 or delimiter in ('"', "\n", "\r"):
        raise ValueError(f"Unusable delimiter {delimiter!r}")
    return ExportProfile(
        id=profile_id,
        profile_name=name,
        export_type=ExportType(export_type),
        export_format=ExportFormat(_pick(data, "export_format", "exportFormat", "csv")),
        delivery_method=DeliveryMethod(
            _pick(data, "delivery_method", "deliveryMethod", "file_download")
        ),
        delimiter=delimiter,
        default_gl_account=_pick(data, "default_gl_account", "defaultGlAccount"),
        default_cost_element=_pick(data, "default_cost_element", "defaultCostElement"),
        default_scope=BatchScope.of(
            _pick(data, "default_entity_filter", "defaultEntityFilter"),
            _pick(data, "default_cost_centre_filter", "defaultCostCentreFilter"),
        ),
        date_basis=DateBasis(_pick(data, "date_basis", "dateBasis", "expense_date")),
        is_active=bool(_pick(data, "is_active", "isActive", True)),
    )


class ProfileService:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = ExportAuditor(session, self._clock)

    def get_profile(self, profile_id: UUID | str) -> ExportProfileModel:
        """
        Raises:
            ExportProfileNotFoundError: unknown id.
        """
        profile = self._session.get(
            ExportProfileModel, as_uuid(profile_id, ExportProfileNotFoundError)
        )
        if profile is None:
            raise ExportProfileNotFoundError(str(profile_id))
        return profile

    def _name_taken(self, name: str, exclude: UUID | None) -> bool:
        query = select(ExportProfileModel.id).where(ExportProfileModel.profile_name == name)
        if exclude is not None:
            query = query.where(ExportProfileModel.id != exclude)
        return self._session.execute(query).first() is not None

    def save_profile(
        self,
        profile: ExportProfile,
        actor_id: UUID,
        profile_id: UUID | str | None = None,
    ) -> ExportProfile:
        """
        Create a profile, or overwrite the editable fields of ``profile_id``.

        Raises:
            ExportProfileNotFoundError: ``profile_id`` given but unknown.
            ConflictError: another profile already has this name.
        """
        model = self.get_profile(profile_id) if profile_id is not None else None
        if self._name_taken(profile.profile_name, model.id if model else None):
            raise ConflictError(f"Export profile name already in use: {profile.profile_name}")

        created = model is None
        if created:
            model = ExportProfileModel(created_by_id=actor_id)
            self._session.add(model)
        else:
            model.updated_by_id = actor_id
        model.apply_dto(profile)
        self._session.flush()

        self._auditor.record(
            ProfileSavedDetails(
                profile_id=str(model.id),
                profile_name=model.profile_name,
                created=created,
            ),
            actor_id=actor_id,
        )
        logger.info(
            "profile_saved",
            extra={"profile_id": str(model.id), "profile_name": model.profile_name, "is_new": created},
        )
        return model.to_dto()

    def list_profiles(self) -> list[ExportProfile]:
        """Active profiles ordered by name."""
        models = self._session.execute(
            select(ExportProfileModel)
            .where(ExportProfileModel.is_active.is_(True))
            .order_by(ExportProfileModel.profile_name)
        ).scalars().all()
        return [model.to_dto() for model in models]
