"""Alerts — rule-match deduplication and alert forwarding.

Modules
───────
  dedup_store — per-(rule, dedup key) entries with conditional writes + change stream
  dedup       — window state machine: RuleMatch -> DedupEntry
  rules       — rule metadata (name, severity) from rules.yaml
  store       — alert history (upsert with version check, read/query contract)
  forwarder   — change stream -> Alert upsert -> delivery notification
"""
