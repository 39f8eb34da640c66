"""
SQL statement helpers.
"""

import re

# Statements that change data or schema and therefore must reach the master
MANIPULATION_PATTERN = re.compile(
    r"""^\s*"?(INSERT|UPDATE|DELETE|REPLACE|CREATE|DROP|
    LOAD\s+DATA|SELECT\s.*\sINTO\s.*\sFROM|COPY|ALTER|GRANT|REVOKE|
    LOCK|UNLOCK)\s+""",
    re.IGNORECASE | re.VERBOSE | re.DOTALL,
)


def is_manipulation(statement: str) -> bool:
    """Check if a statement modifies data and must run on the master."""
    return bool(MANIPULATION_PATTERN.match(statement))
