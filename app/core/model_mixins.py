"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    ImmutableFieldsMixin: Reject edits to selected fields after creation

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin

    class LedgerEntry(UUIDPrimaryKeyMixin, BaseModel):
        amount_cents = models.BigIntegerField()
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models

from core.exceptions import ConflictError

if TYPE_CHECKING:
    from typing import Any


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    UUIDs are non-guessable and can be handed to external providers as
    references before the surrounding transaction commits.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class ImmutableFieldsMixin(models.Model):
    """
    Freeze a set of fields once the row exists.

    Subclasses list the frozen fields in ``immutable_fields``. The values
    loaded from the database are remembered, and ``save()`` raises
    ConflictError when any of them changed.

    Usage:
        class Contract(ImmutableFieldsMixin, BaseModel):
            immutable_fields = ("gross_amount_cents",)
    """

    immutable_fields: tuple[str, ...] = ()
    immutable_error_class: type[ConflictError] = ConflictError

    class Meta:
        abstract = True

    @classmethod
    def from_db(cls, db: Any, field_names: Any, values: Any) -> Any:
        instance = super().from_db(db, field_names, values)
        instance._loaded_immutable_values = {
            name: getattr(instance, name)
            for name in cls.immutable_fields
            if name in field_names
        }
        return instance

    def changed_immutable_fields(self) -> list[str]:
        """Return the frozen fields whose value differs from the stored one."""
        loaded = getattr(self, "_loaded_immutable_values", None)
        if self._state.adding or loaded is None:
            return []
        return [
            name
            for name, value in loaded.items()
            if getattr(self, name) != value
        ]

    def save(self, *args: Any, **kwargs: Any) -> None:
        changed = self.changed_immutable_fields()
        if changed:
            raise self.immutable_error_class(
                f"{self.__class__.__name__} {self.pk} fields are immutable",
                error_code="IMMUTABLE_FIELD",
                details={"fields": changed},
            )
        super().save(*args, **kwargs)
        self._loaded_immutable_values = {
            name: getattr(self, name) for name in self.immutable_fields
        }
