"""Persistence — committed exports on disk and the audit ledger."""
