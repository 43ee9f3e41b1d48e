"""Caseload scheduler: places students' weekly service sessions into school-day slots.

Modules:
- config: load and validate configuration (YAML or JSON)
- domain: SQLAlchemy models, repositories and the scheduling store
- services: time grid, data cache, constraint checks, distribution, scoring
- engine: per-student engine and the batch coordinator
- validator: post-run checks and summaries over pandas frames
- cli: command-line interface entrypoints
"""

__all__ = [
    "config",
    "domain",
    "services",
    "engine",
    "validator",
    "cli",
]
