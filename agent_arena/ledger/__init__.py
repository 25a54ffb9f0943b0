"""Per-agent position and portfolio ledger."""
from agent_arena.ledger.ledger import Ledger, LedgerCheck, LedgerRejection, mark_prices

__all__ = ["Ledger", "LedgerCheck", "LedgerRejection", "mark_prices"]
