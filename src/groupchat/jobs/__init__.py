"""Group chat job queue: payloads, handler, worker and ledger."""
