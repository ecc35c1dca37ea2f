"""
Request Parameter Accumulation and Validation

A request is a block of ``name:value`` lines terminated by one empty line.
ParameterAccumulator turns received lines into a parameter mapping and reports
the terminator; validate_parameters() is the gate that decides whether the
collected block may be executed.

Malformed lines (no separator, empty name, empty value) are framing noise and
are dropped silently.
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger()

# Data source locator, e.g. postgresql://localhost:5432/mydb
SQL_URL = "x-sqlp-url"

# Database username
SQL_USERNAME = "x-sqlp-username"

# Database password
SQL_PASSWORD = "x-sqlp-pwd"

# Statement to be executed, forwarded verbatim
SQL_STATEMENT = "x-sqlp-stmt"

# Driver identifier, e.g. postgresql+psycopg
SQL_DRIVER = "x-sqlp-driver"

# Response format: xml or json, json if not specified
SQL_FORMAT = "x-sqlp-format"

FORMAT_XML = "xml"
FORMAT_JSON = "json"

MANDATORY_PARAMETERS = (SQL_URL, SQL_USERNAME, SQL_PASSWORD, SQL_DRIVER, SQL_STATEMENT)


class MissingParameterError(Exception):
    """Raised by the gate when mandatory parameters are absent or empty"""

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Missing mandatory parameters: {', '.join(missing)}")


@dataclass(frozen=True)
class RequestParameters:
    """Validated request, ready for execution"""
    driver: str
    url: str
    username: str
    password: str
    statement: str
    output_format: str = FORMAT_JSON

    def __repr__(self) -> str:
        # keep the password out of logs and tracebacks
        return (f"RequestParameters(driver={self.driver!r}, url={self.url!r}, "
                f"username={self.username!r}, output_format={self.output_format!r})")


def parse_parameter_line(line: str) -> Optional[Tuple[str, str]]:
    """
    Split a ``name:value`` line.

    The name is everything before the first ``:`` (kept as-is, case-sensitive),
    the value is everything after it with surrounding whitespace removed.

    Returns:
        (name, value) tuple, or None if the line is framing noise
    """
    separator_position = line.find(':')
    if separator_position <= 0:
        return None

    name = line[:separator_position]
    value = line[separator_position + 1:].strip()
    if not name or not value:
        return None

    return name, value


class ParameterAccumulator:
    """
    Collects parameter lines for one request cycle.

    ingest() is called once per received line, terminator included. It returns
    True when the empty terminator line arrives; the collected mapping is then
    available through ``parameters`` until reset() starts the next cycle.
    """

    def __init__(self):
        self.parameters: Dict[str, str] = {}
        self.discarded_lines = 0

    def ingest(self, line: str) -> bool:
        if not line:
            return True

        parsed = parse_parameter_line(line)
        if parsed is None:
            self.discarded_lines += 1
            logger.debug("Discarded malformed parameter line", length=len(line))
            return False

        name, value = parsed
        # last write wins on duplicates
        self.parameters[name] = value
        return False

    def reset(self):
        """Start a new request cycle with an empty parameter set"""
        self.parameters = {}
        self.discarded_lines = 0


def validate_parameters(parameters: Mapping[str, str]) -> RequestParameters:
    """
    Gate a collected parameter set.

    All five mandatory parameters must be present with non-empty values. The
    output format is optional and defaults to JSON.

    Raises:
        MissingParameterError: one or more mandatory parameters missing
    """
    missing = [name for name in MANDATORY_PARAMETERS if not parameters.get(name)]
    if missing:
        raise MissingParameterError(missing)

    return RequestParameters(
        driver=parameters[SQL_DRIVER],
        url=parameters[SQL_URL],
        username=parameters[SQL_USERNAME],
        password=parameters[SQL_PASSWORD],
        statement=parameters[SQL_STATEMENT],
        output_format=parameters.get(SQL_FORMAT) or FORMAT_JSON,
    )
