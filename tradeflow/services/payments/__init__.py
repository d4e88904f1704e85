"""Payment ledger, provider client and webhooks."""
