"""
Envelope Decoder - raw change-event messages to ChangeEnvelope.

Decoding and filtering are separate steps:
- decode_envelope() parses the payload and raises DecodeError on a bad shape
- creation_row() picks the row to act on, or None when the event is skipped
"""

import logging
from typing import Optional, Type, Union

from pydantic import ValidationError

from utils.errors import DecodeError
from utils.schemas import ChangeEnvelope, RowT

logger = logging.getLogger(__name__)


def decode_envelope(raw: Union[bytes, str], row_type: Type[RowT]) -> ChangeEnvelope[RowT]:
    """
    Parse a raw change-event message.

    Unknown fields at any level are ignored.

    Args:
        raw: Message value as received from the channel
        row_type: Schema of the before/after row images

    Returns:
        Decoded envelope

    Raises:
        DecodeError: If the payload is not JSON or lacks the envelope shape
    """
    try:
        return ChangeEnvelope[row_type].model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"Malformed change envelope: {e.errors()[0]['msg']}") from e


def creation_row(envelope: ChangeEnvelope[RowT], context: Optional[dict] = None) -> Optional[RowT]:
    """
    Return the row to act on, or None if the event is skipped.

    Non-creation operations are skipped at DEBUG. A creation event without an
    ``after`` image is a data-corruption signal and is skipped at WARNING.

    Args:
        envelope: Decoded envelope
        context: Extra logging fields (stream, message id)
    """
    context = context or {}

    if not envelope.is_creation:
        logger.debug("Ignoring non-creation change event", extra={"op": envelope.op, **context})
        return None

    if envelope.after is None:
        logger.warning(
            "Creation event without 'after' row image, skipping",
            extra={
                "op": envelope.op,
                "table": envelope.source.table if envelope.source else None,
                **context,
            },
        )
        return None

    return envelope.after
