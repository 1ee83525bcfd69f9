"""
Shared Task Board

Real-time multi-user task board: a FastAPI/WebSocket server that serializes
mutations to shared tasks and fans them out, plus an asyncio client that
reconciles optimistic edits, cached snapshots and server confirmations.
"""

__version__ = "1.0.0"
