"""Ledger clients: a simulated in-memory chain and a JSON-RPC client."""

from x402_settlement.ledger.base import (
    ExecuteTransferCall,
    LedgerClient,
    Receipt,
    TransactionRequest,
)
from x402_settlement.ledger.memory import InMemoryLedger, TokenBook
from x402_settlement.ledger.web3_ledger import GATE_ABI, Web3Ledger

__all__ = [
    "ExecuteTransferCall",
    "GATE_ABI",
    "InMemoryLedger",
    "LedgerClient",
    "Receipt",
    "TokenBook",
    "TransactionRequest",
    "Web3Ledger",
]
