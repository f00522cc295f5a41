"""One-way relay of settlement claims into payout receipts."""

from attestpay.relay.forwarder import PayoutReceipt, RelayForwarder, RelayStats, source_event_id

__all__ = ["PayoutReceipt", "RelayForwarder", "RelayStats", "source_event_id"]
