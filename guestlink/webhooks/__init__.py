"""Inbound webhooks: signature-verified, deduplicated, rule-routed."""
