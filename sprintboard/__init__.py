"""Sprint board companion service: task ownership and live board reconciliation."""
