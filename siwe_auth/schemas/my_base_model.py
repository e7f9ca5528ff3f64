import logging
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_FALLBACKS = {dict: dict, str: str, bool: bool, int: int, float: float}


class CustomBaseModel(BaseModel):
    """Base model for response schemas.
    - coerce simple-typed fields to their annotated type before init
    - fall back to the field default (or the type's empty value) when coercion fails
    """

    def __init__(self, **data: Any) -> None:
        fields = type(self).model_fields
        for attr, value in data.items():
            info = fields.get(attr)
            if info is None or value is None:
                continue
            attr_type = info.annotation
            if attr_type not in _FALLBACKS:
                continue
            try:
                data[attr] = attr_type(value)
            except (TypeError, ValueError):
                logger.warning("Invalid value for key %s, using default", attr)
                data[attr] = info.default if not info.is_required() else _FALLBACKS[attr_type]()
        super().__init__(**data)
