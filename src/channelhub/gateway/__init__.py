"""HTTP surface receiving provider webhooks."""
