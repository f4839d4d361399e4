"""
postguard - defensive gateway for interview-to-post generation.

Modules:
- patterns: immutable rule tables (injection, warning, filler, repairs)
- security: prompt-injection sanitizer and delimited prompt sections
- quality_gate: filler ("AI slop") detection, severity and auto-repair
- rate_limit: tiered fixed-window limiter over in-memory or Redis stores
- gateway: composition root (limit -> validate -> sanitize -> generate -> score)
- prompts: generation prompt assembly
- schemas: pydantic wire models
- error_sanitizer: generic messages and redaction of error detail
- audit_log: allowlist-only JSON security audit events
- settings / logging_config: configuration and logging setup
"""
