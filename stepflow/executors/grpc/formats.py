"""
gRPC payload formats - Parsing request messages and formatting responses.

Two formats are supported:
- json: protobuf JSON mapping; several messages may be concatenated
- text: protobuf text format; messages separated by the ASCII record
  separator (0x1E)

An empty payload always yields one empty message.
"""

import json
from typing import Any, List, Optional, Type

from google.protobuf import json_format, text_format
from google.protobuf.message import Message

FORMAT_JSON = "json"
FORMAT_TEXT = "text"

RECORD_SEPARATOR = "\x1e"

_FORMAT_ALIASES = {
    "": FORMAT_JSON,
    "json": FORMAT_JSON,
    "text": FORMAT_TEXT,
    "proto": FORMAT_TEXT,
    "protobuf": FORMAT_TEXT,
}


def parse_format(value: Optional[str]) -> str:
    """
    Normalize a step's format field.

    Raises:
        ValueError: If the format is not supported
    """
    fmt = _FORMAT_ALIASES.get((value or "").strip().lower())
    if fmt is None:
        raise ValueError(f"unsupported grpc format \"{value}\"")
    return fmt


def _split_json_documents(payload: str) -> List[Any]:
    decoder = json.JSONDecoder()
    documents = []
    pos = 0
    while True:
        while pos < len(payload) and payload[pos].isspace():
            pos += 1
        if pos >= len(payload):
            break
        document, pos = decoder.raw_decode(payload, pos)
        documents.append(document)
    return documents


def parse_requests(payload: str, message_class: Type[Message], fmt: str,
                   descriptor_pool: Any = None) -> List[Message]:
    """
    Parse a request payload into one or more messages.

    Args:
        payload: Rendered request text
        message_class: Request message class
        fmt: FORMAT_JSON or FORMAT_TEXT
        descriptor_pool: Pool used to resolve google.protobuf.Any contents

    Returns:
        List of request messages (never empty)

    Raises:
        ValueError: If the payload cannot be parsed
    """
    messages: List[Message] = []

    try:
        if fmt == FORMAT_JSON:
            for document in _split_json_documents(payload):
                message = message_class()
                json_format.ParseDict(document, message, descriptor_pool=descriptor_pool)
                messages.append(message)
        else:
            for chunk in payload.split(RECORD_SEPARATOR):
                if not chunk.strip():
                    continue
                message = message_class()
                text_format.Parse(chunk, message, descriptor_pool=descriptor_pool)
                messages.append(message)
    except (json_format.ParseError, text_format.ParseError) as e:
        raise ValueError(str(e)) from e

    if not messages:
        messages.append(message_class())

    return messages


def format_response(message: Message, fmt: str, descriptor_pool: Any = None) -> str:
    """Format one response message, including default-valued fields in JSON."""
    if fmt == FORMAT_JSON:
        text = json_format.MessageToJson(
            message,
            always_print_fields_with_no_presence=True,
            descriptor_pool=descriptor_pool,
            indent=2,
        )
    else:
        text = text_format.MessageToString(message, descriptor_pool=descriptor_pool)
    return text.strip()


def join_responses(responses: List[str]) -> str:
    """
    Combine formatted responses into the step's response payload.

    One response is returned as-is; several become a JSON-style array.
    """
    if not responses:
        return ""
    if len(responses) == 1:
        return responses[0]
    return "[" + ",".join(response.strip() for response in responses) + "]"
