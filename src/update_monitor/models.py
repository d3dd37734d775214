"""
Data records passed between the provider client and the consumer.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class UpdateRecord:
    """One provider update, identified by its monotonically increasing id."""

    sequence_id: int
    payload: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_api(cls, obj: Any) -> "UpdateRecord":
        """
        Build a record from a raw Bot API update object.

        Raises:
            ValueError: If the object has no integer ``update_id``
        """
        if not isinstance(obj, dict):
            raise ValueError(f"update must be an object, got {type(obj).__name__}")
        update_id = obj.get("update_id")
        # bool is an int subclass; reject it explicitly
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            raise ValueError("update is missing an integer update_id")
        return cls(sequence_id=update_id, payload=obj)
