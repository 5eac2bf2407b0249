"""
Wire protocol module.
"""

from jobwire.protocol.codec import (
    CRLF,
    Reply,
    ReplyKind,
    decode_json,
    encode_command,
    encode_payload,
    parse_reply_line,
    read_reply,
)

__all__ = [
    "CRLF",
    "Reply",
    "ReplyKind",
    "decode_json",
    "encode_command",
    "encode_payload",
    "parse_reply_line",
    "read_reply",
]
