#!/usr/bin/env python3
"""
JSON-RPC 2.0 envelope helpers shared by the HTTP and stdio front ends
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from mcp_chrome_proxy.errors import MalformedRequest

JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined error codes
BACKEND_UNAVAILABLE = -32000
UPSTREAM_TIMEOUT = -32001

RequestId = Union[int, str, None]


class Envelope(BaseModel):
    """Shape check for an inbound JSON-RPC message.

    Only the routing fields are declared; everything else is carried along
    untouched in the raw dict the model was validated from.
    """

    model_config = ConfigDict(extra="allow")

    jsonrpc: Literal["2.0"]
    id: Optional[Union[int, str]] = None
    method: Optional[str] = None
    params: Optional[Union[Dict[str, Any], List[Any]]] = None


def is_notification(message: Dict[str, Any]) -> bool:
    """A request without an ``id`` member expects no answer"""
    return "method" in message and "id" not in message


def is_response(message: Dict[str, Any]) -> bool:
    """A message carrying ``result`` or ``error`` and no ``method``"""
    return "method" not in message and ("result" in message or "error" in message)


def success_response(request_id: RequestId, result: Any) -> Dict[str, Any]:
    """Generate a JSON-RPC success response

    Args:
        request_id: ID of the request being answered
        result: Result data

    Returns:
        JSON-RPC success response dict
    """
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result
    }


def error_response(request_id: RequestId, message: str, code: int = INTERNAL_ERROR,
                   data: Any = None) -> Dict[str, Any]:
    """Generate a JSON-RPC error response

    Args:
        request_id: ID of the request being answered
        message: Error message
        code: JSON-RPC error code
        data: Optional extra error data

    Returns:
        JSON-RPC error response dict
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error
    }


def relay_error(request_id: RequestId, error: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap an error object received from the child without touching it"""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error
    }


def parse_body(body: Union[bytes, str]) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
    """Parse an HTTP body into a single envelope or a batch

    Args:
        body: Raw request body

    Returns:
        The decoded message, or a list of messages for a batch

    Raises:
        MalformedRequest: If the body is empty, not JSON, or not JSON-RPC 2.0
    """
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRequest(f"Request body is not UTF-8: {e}") from e

    if not body.strip():
        raise MalformedRequest("Request body is empty")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedRequest(f"Invalid JSON: {e}") from e

    if isinstance(payload, list):
        if not payload:
            raise MalformedRequest("Empty JSON-RPC batch")
        for item in payload:
            validate_envelope(item)
        return payload

    validate_envelope(payload)
    return payload


def validate_envelope(message: Any) -> Dict[str, Any]:
    """Check that ``message`` is a JSON-RPC 2.0 object

    Raises:
        MalformedRequest: If the shape is wrong
    """
    if not isinstance(message, dict):
        raise MalformedRequest("JSON-RPC message must be an object")
    try:
        Envelope.model_validate(message)
    except ValidationError as e:
        raise MalformedRequest(f"Invalid JSON-RPC envelope: {e.errors()[0]['msg']}") from e
    if "method" not in message and not is_response(message):
        raise MalformedRequest("JSON-RPC message has neither method nor result")
    return message
