"""
Monitoring & Observability package

Includes:
- alerting: correlation rules and alert sinks (log, Sentry, webhook)
- tracing: correlation IDs
"""
