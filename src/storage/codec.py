"""JSON codec between entity models and stored text payloads.

Adapters store every entity as a flat JSON string in a generic text/value
cell. Decoding is forgiving by default: a malformed payload reads as absent
so that read paths never raise.
"""

from collections.abc import Mapping
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from src.logger import get_logger
from src.storage.errors import DecodeFailure

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def encode_record(record: BaseModel) -> str:
    """Serialize a model to its JSON payload."""
    return record.model_dump_json()


def decode_record(
    model_cls: type[ModelT],
    payload: str | bytes | None,
    strict: bool = False,
) -> ModelT | None:
    """Deserialize a stored payload.

    Args:
        model_cls: Model class to validate against
        payload: Stored JSON text (None means no row)
        strict: Raise DecodeFailure instead of returning None on bad data

    Returns:
        Decoded model, or None if the payload is missing or malformed
    """
    if payload is None:
        return None
    try:
        return model_cls.model_validate_json(payload)
    except ValidationError as e:
        if strict:
            raise DecodeFailure(f"Malformed {model_cls.__name__} payload") from e
        logger.warning(
            "record_decode_failed",
            model=model_cls.__name__,
            errors=e.error_count(),
        )
        return None


def decode_records(
    model_cls: type[ModelT],
    payloads: Mapping[str, str | bytes],
) -> dict[str, ModelT]:
    """Decode a key→payload mapping, dropping entries that fail to decode."""
    records: dict[str, ModelT] = {}
    for key, payload in payloads.items():
        record = decode_record(model_cls, payload)
        if record is not None:
            records[key] = record
    return records
