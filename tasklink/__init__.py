"""
TaskLink — Community Task & Allowlist Bridge for Discord
=========================================================
Connects a Discord server to an external community/promotions backend.
Members list and complete social tasks, enter allowlists and check their
status through slash commands and buttons; owners link the server to a
backend community; admins run analytics and security tooling.

Every inbound interaction travels one protected pipeline: rate limiting,
permission evaluation, behavioural security monitoring, validated handler
invocation, and audit.

Package layout::

    tasklink/
    ├── config.py          # Environment + YAML tuning → typed config
    ├── constants.py       # Reply strings, option enums, redaction list
    ├── runtime.py         # Builds and holds every shared component
    ├── cli.py             # tasklink-admin (registration + DB admin)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # ORM models (mappings, lockdowns, audit, logs)
    │   └── repository.py  # Thin storage interface used by the core
    ├── engine/
    │   ├── interactions.py # Interaction record + responder capability
    │   ├── keys.py        # Enumerated cache key builder
    │   ├── cache.py       # Redis cache layer with degraded mode
    │   ├── rate_limiter.py # Sliding windows + violation ledger
    │   ├── audit.py       # Redacting, append-only audit log
    │   ├── permissions.py # Static policy × guild state evaluator
    │   ├── guild.py       # GuildState, community mapping, lockdown
    │   ├── security.py    # Behavioural anomaly monitor
    │   └── validation.py  # Option schemas + custom-id grammar
    ├── services/
    │   ├── backend_client.py # httpx client, retries, read-through cache
    │   ├── guild_service.py  # GuildState loading and mutation
    │   ├── alerts.py      # Security alert queue + delivery
    │   ├── health.py      # Dependency health monitor
    │   ├── scheduler.py   # Owner of every periodic task
    │   └── embeds.py      # Discord embed builders
    ├── bot/
    │   ├── core.py        # Bot subclass, runtime wiring
    │   ├── adapter.py     # discord.py objects → core records
    │   ├── registry.py    # Typed command + button registry
    │   ├── dispatcher.py  # The interaction pipeline
    │   ├── handlers.py    # Command and button handlers
    │   └── cogs/
    │       └── gateway.py # Gateway listeners feeding the dispatcher
    └── api/
        ├── main.py        # FastAPI monitoring app
        ├── deps.py        # JWT admin dependency
        └── routes/        # Health, security and audit endpoints
"""

__version__ = "1.0.0"
