"""
Sign-in message codec (EIP-4361 text format).

Message layout:
    {domain} wants you to sign in with your Ethereum account:
    {address}

    {statement}

    URI: {uri}
    Version: {version}
    Chain ID: {chain_id}
    Nonce: {nonce}
    Issued At: {issued_at}
    Expiration Time: {expiration_time}
    Not Before: {not_before}
    Request ID: {request_id}
    Resources:
    - {resource}
    - {resource}

Statement, the last four fields and the resources block are optional.
parse() checksums the address token so every later comparison works on the
same canonical form.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from siwe_auth.core.errors import ErrorKind, Result
from siwe_auth.core.signature import is_address, to_checksum_address

HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"
HEADER_PATTERN = re.compile(r"^(?P<domain>\S+) wants you to sign in with your Ethereum account:$")
FIELD_PATTERN = re.compile(
    r"^(?P<key>URI|Version|Chain ID|Nonce|Issued At|Expiration Time|Not Before|Request ID|Resources):(?P<value>.*)$"
)
RESOURCE_MARKER = "- "

# key in the text format -> attribute name
FIELD_NAMES = {
    "URI": "uri",
    "Version": "version",
    "Chain ID": "chain_id",
    "Nonce": "nonce",
    "Issued At": "issued_at",
    "Expiration Time": "expiration_time",
    "Not Before": "not_before",
    "Request ID": "request_id",
}
TIMESTAMP_FIELDS = ("issued_at", "expiration_time", "not_before")
REQUIRED_FIELDS = ("domain", "address", "uri", "version", "nonce", "issued_at")

NAME_CLAIM_PREFIXES = ("name:", "ens:")


@dataclass
class SignInMessage:
    """Structured form of a sign-in message."""

    domain: str
    address: str
    uri: str
    version: str
    chain_id: int
    nonce: str
    issued_at: datetime
    statement: Optional[str] = None
    expiration_time: Optional[datetime] = None
    not_before: Optional[datetime] = None
    request_id: Optional[str] = None
    resources: List[str] = field(default_factory=list)
    # timestamp text as it appeared in the parsed message, written back unchanged
    source_timestamps: Dict[str, str] = field(default_factory=dict, compare=False, repr=False)
    empty_resources_block: bool = field(default=False, compare=False, repr=False)

    @property
    def name_claim(self) -> Optional[str]:
        """Name asserted in resources (first `name:` entry), if any."""
        for resource in self.resources:
            for prefix in NAME_CLAIM_PREFIXES:
                if resource.startswith(prefix) and len(resource) > len(prefix):
                    return resource[len(prefix):].strip()
        return None


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    value = value.strip()
    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    Format as `YYYY-MM-DDTHH:MM:SS.mmmZ`, the form browsers emit.

    Sub-millisecond values keep all six fraction digits so parsing the
    output gives back the same datetime.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if value.microsecond % 1000:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _render_timestamp(message: "SignInMessage", name: str) -> str:
    value = getattr(message, name)
    source = message.source_timestamps.get(name)
    if source is not None and parse_timestamp(source) == value:
        return source
    return format_timestamp(value)


def _split_statement(lines: List[str]) -> tuple:
    """Helper: Split the lines after the address into (statement, field lines)."""
    if lines and lines[0].strip() == "":
        lines = lines[1:]
    statement_lines = []
    while lines and not FIELD_PATTERN.match(lines[0]):
        statement_lines.append(lines[0])
        lines = lines[1:]
    statement = "\n".join(statement_lines).strip()
    return (statement or None), lines


def parse(text: str) -> Result:
    """
    Parse message text into a SignInMessage.

    Returns:
        Result.success(SignInMessage) or Result.failure(PARSE_ERROR, reason)
    """
    if not text or not text.strip():
        return Result.failure(ErrorKind.PARSE_ERROR, "empty message")

    lines = text.replace("\r\n", "\n").split("\n")
    if len(lines) < 2:
        return Result.failure(ErrorKind.PARSE_ERROR, "message too short")

    header = HEADER_PATTERN.match(lines[0])
    if not header:
        return Result.failure(ErrorKind.PARSE_ERROR, "invalid header line")

    address_token = lines[1].strip()
    if not is_address(address_token):
        return Result.failure(ErrorKind.PARSE_ERROR, "invalid address line")

    statement, field_lines = _split_statement(lines[2:])

    values = {}
    resources = None
    for line in field_lines:
        line = line.strip()
        if not line:
            continue
        match = FIELD_PATTERN.match(line)
        if match:
            key = match.group("key")
            if key == "Resources":
                resources = []
                continue
            if resources is not None:
                return Result.failure(ErrorKind.PARSE_ERROR, f"field after resources: {key}")
            values[FIELD_NAMES[key]] = match.group("value").strip()
        elif resources is not None and line.startswith(RESOURCE_MARKER):
            resources.append(line[len(RESOURCE_MARKER):].strip())
        else:
            return Result.failure(ErrorKind.PARSE_ERROR, f"unexpected line: {line[:40]}")

    values["domain"] = header.group("domain")
    values["address"] = address_token
    missing = [name for name in REQUIRED_FIELDS if not values.get(name)]
    if missing:
        return Result.failure(ErrorKind.PARSE_ERROR, f"missing required field: {missing[0]}")

    try:
        chain_id = int(values.get("chain_id", "1"))
    except ValueError:
        return Result.failure(ErrorKind.PARSE_ERROR, "chain id is not an integer")

    timestamps = {}
    sources = {}
    for name in TIMESTAMP_FIELDS:
        raw = values.get(name)
        if not raw:
            timestamps[name] = None
            continue
        try:
            timestamps[name] = parse_timestamp(raw)
            sources[name] = raw
        except ValueError:
            return Result.failure(ErrorKind.PARSE_ERROR, f"invalid timestamp in {name}")

    return Result.success(
        SignInMessage(
            domain=values["domain"],
            address=to_checksum_address(address_token),
            statement=statement,
            uri=values["uri"],
            version=values["version"],
            chain_id=chain_id,
            nonce=values["nonce"],
            issued_at=timestamps["issued_at"],
            expiration_time=timestamps["expiration_time"],
            not_before=timestamps["not_before"],
            request_id=values.get("request_id") or None,
            resources=resources or [],
            source_timestamps=sources,
            empty_resources_block=resources == [],
        )
    )


def serialize(message: SignInMessage) -> str:
    """Render a SignInMessage in the canonical text layout."""
    lines = [f"{message.domain}{HEADER_SUFFIX}", message.address, ""]
    if message.statement:
        lines += [message.statement, ""]
    lines += [
        f"URI: {message.uri}",
        f"Version: {message.version}",
        f"Chain ID: {message.chain_id}",
        f"Nonce: {message.nonce}",
        f"Issued At: {_render_timestamp(message, 'issued_at')}",
    ]
    if message.expiration_time is not None:
        lines.append(f"Expiration Time: {_render_timestamp(message, 'expiration_time')}")
    if message.not_before is not None:
        lines.append(f"Not Before: {_render_timestamp(message, 'not_before')}")
    if message.request_id:
        lines.append(f"Request ID: {message.request_id}")
    if message.resources or message.empty_resources_block:
        lines.append("Resources:")
        lines += [f"{RESOURCE_MARKER}{resource}" for resource in message.resources]
    return "\n".join(lines)
