"""
Ledger-backed Todo backend.

Todos live in a primary store (memory or SQLite); a SHA-256 content hash of
each todo is mirrored to the TodoRegistry smart contract so its content can
be verified later. The FastAPI app lives in ``todo_ledger.main``.
"""

__version__ = "0.2.0"
