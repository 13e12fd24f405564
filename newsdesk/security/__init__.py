"""
Security package: request signing, rate limiting, CSRF, threat detection,
event monitoring and the defense pipeline that sequences them.

Modules are async-first where applicable, use structlog for logging, and can
keep rate-limit windows in Redis when the process is scaled out. Components
are built once by `services.build_security_services` and shared through
`app.state.security`.
"""
