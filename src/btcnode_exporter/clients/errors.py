#!/usr/bin/env python3
"""
Exporter Error Types

Startup errors (ConfigError) terminate the process. Collection errors are
attached to the metric group that failed and never abort a cycle.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failed node query"""
    TRANSIENT_NETWORK = "transient_network"
    AUTH_FAILURE = "auth_failure"
    RPC_PROTOCOL_ERROR = "rpc_protocol_error"
    PARSE_ERROR = "parse_error"


class ExporterError(Exception):
    """Base class for all exporter errors"""


class ConfigError(ExporterError):
    """Invalid or incomplete configuration (fatal at startup)"""


class CollectionError(ExporterError):
    """
    A failed query for one metric group

    Attributes:
        kind: ErrorKind classification
        group: Name of the affected metric group (None until attached)
        message: Human readable description
    """

    kind = ErrorKind.RPC_PROTOCOL_ERROR

    def __init__(self, message: str, group: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.group = group

    def __str__(self) -> str:
        if self.group:
            return f"[{self.group}] {self.kind.value}: {self.message}"
        return f"{self.kind.value}: {self.message}"


class NodeConnectionError(CollectionError):
    """Node unreachable, refused the connection, or timed out"""
    kind = ErrorKind.TRANSIENT_NETWORK


class AuthError(CollectionError):
    """Node rejected our credentials; recurs every cycle until config changes"""
    kind = ErrorKind.AUTH_FAILURE


class RpcProtocolError(CollectionError):
    """Node returned an error payload instead of a result"""
    kind = ErrorKind.RPC_PROTOCOL_ERROR

    def __init__(self, message: str, group: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message, group)
        self.code = code


class ParseError(CollectionError):
    """Response did not have the shape the mapping rules expect"""
    kind = ErrorKind.PARSE_ERROR
