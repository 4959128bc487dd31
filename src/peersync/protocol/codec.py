"""JSON encoding of protocol messages."""

import json
from typing import Optional, Union

from pydantic import ValidationError

from .messages import MESSAGE_TYPES, BaseMessage
from ..utils.logging import get_logger


class ProtocolCodec:
    """Encodes messages to UTF-8 JSON and decodes them back.

    Unknown message types decode to None so newer peers can add messages
    without breaking older ones. Payloads that are not a JSON object with a
    valid ``type`` and the fields its model requires raise
    MalformedMessageError.
    """

    encoding = "utf-8"

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def encode(self, message: BaseMessage) -> bytes:
        return message.model_dump_json().encode(self.encoding)

    def decode(self, data: Union[bytes, str]) -> Optional[BaseMessage]:
        """Decode one message.

        Returns:
            The message model, or None for an unknown message type

        Raises:
            MalformedMessageError: If the payload cannot be parsed
        """
        try:
            text = data.decode(self.encoding) if isinstance(data, (bytes, bytearray)) else data
            payload = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessageError(f"Message is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedMessageError("Message must be a JSON object")

        message_type = payload.get("type")
        if not isinstance(message_type, str) or not message_type:
            raise MalformedMessageError("Message has no type")

        model = MESSAGE_TYPES.get(message_type)
        if model is None:
            self.logger.warning("Ignoring unknown message type", message_type=message_type)
            return None

        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise MalformedMessageError(f"Invalid {message_type} message: {e}") from e


class ProtocolError(Exception):
    """Base exception for protocol errors."""

    code = "protocol_error"


class MalformedMessageError(ProtocolError):
    """Raised when an inbound payload cannot be decoded."""

    code = "malformed_message"
