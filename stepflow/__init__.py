"""
stepflow - Declarative multi-protocol flow executor.

Runs ordered steps against HTTP APIs, SQL databases, MongoDB and gRPC
services, threading a shared variable context between them.
"""

__version__ = "0.1.0"
