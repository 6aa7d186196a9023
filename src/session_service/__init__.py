"""Remote session document service backing the inventory sync client."""
