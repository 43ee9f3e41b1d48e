"""Services for scheduling logic.

Modules:
- timeplan: clock-time helpers and the start-time grid
- data_cache: per provider/school cache of scheduling inputs
- constraints: slot constraint checks
- distribution: slot distribution strategies
- scoring: combination scores and student difficulty
"""

__all__ = [
    "timeplan",
    "data_cache",
    "constraints",
    "distribution",
    "scoring",
]
