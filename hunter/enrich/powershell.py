"""PowerShell command extraction for 4103 / 4104 events.

4103 (module logging) carries the command line inside ContextInfo, after a
"Host Application = " label (localized on Japanese systems).  4104 (script
block logging) carries it in ScriptBlockText.  Extracted commands that are
not whitelisted are checked for a couple of well-known abuse signs and
turned into alerts.

The whitelist is a CSV file of regular expressions, one per row, with an
optional "regex" header.
"""

import base64
import binascii
import csv
import re
import sys
from pathlib import Path

from hunter.alerts import Alert
from hunter.enrich.geoip import ResourceUnavailable
from hunter.rules import Level

_HOST_APP_PREFIX = re.compile(r"(?ms)^.*(ホスト アプリケーション|Host Application) = ")
_REST_OF_TEXT = re.compile(r"(?ms)\n.*$")
_ENCODED = re.compile(
    r"-e(?:nc(?:odedcommand)?)?\s+([A-Za-z0-9+/=]{20,})", re.IGNORECASE
)

DEFAULT_MIN_LENGTH = 1000


def load_whitelist(path: str | Path) -> list[re.Pattern]:
    path = Path(path)
    if not path.exists():
        raise ResourceUnavailable(f"PowerShell whitelist not found: {path}")
    patterns = []
    try:
        with open(path, newline="", encoding="utf-8") as f:
            for lineno, row in enumerate(csv.reader(f), 1):
                if not row or not row[0].strip():
                    continue
                text = row[0].strip()
                if lineno == 1 and text.lower() == "regex":
                    continue
                try:
                    patterns.append(re.compile(text))
                except re.error as e:
                    print(f"[WARN] Skipping bad whitelist regex (FilePath : {path}, "
                          f"line {lineno}): {e}", file=sys.stderr)
    except UnicodeDecodeError as e:
        raise ResourceUnavailable(f"PowerShell whitelist is not valid UTF-8: {path}") from e
    return patterns


class PowerShellDecoder:

    def __init__(self, whitelist=(), min_length: int = DEFAULT_MIN_LENGTH):
        self.whitelist = list(whitelist)
        self.min_length = min_length

    def extract_command(self, event_id: str, event_data: dict) -> str | None:
        if event_id == "4103":
            context = str(event_data.get("ContextInfo") or "")
            if "Host Application" not in context and "ホスト アプリケーション" not in context:
                return None
            command = _REST_OF_TEXT.sub("", _HOST_APP_PREFIX.sub("", context)).strip()
            return command or None
        if event_id == "4104":
            if event_data.get("MessageNumber") is None:
                return None
            return str(event_data.get("ScriptBlockText") or "") or None
        return None

    def is_whitelisted(self, command: str) -> bool:
        return any(p.search(command) for p in self.whitelist)

    def check_command(self, command: str) -> list[str]:
        """Findings for one command line; empty when it looks benign."""
        if self.is_whitelisted(command):
            return []
        findings = []
        if len(command) >= self.min_length:
            findings.append("Long command line")
        m = _ENCODED.search(command)
        if m:
            decoded = _decode_utf16(m.group(1))
            if decoded is not None:
                findings.append(f"Base64-encoded command: {decoded[:200]}")
        return findings

    def scan(self, records) -> list[Alert]:
        alerts = []
        for record in records:
            event_id = record.get("Event.System.EventID")
            event_data = record.get("Event.EventData")
            if event_id is None or not isinstance(event_data, dict):
                continue
            event_id = str(event_id)
            command = self.extract_command(event_id, event_data)
            if command is None:
                continue
            findings = self.check_command(command)
            if not findings:
                continue
            alerts.append(Alert(
                source_path=record.source_path,
                rule_id=f"powershell-{event_id}",
                timestamp=record.timestamp.isoformat() if record.timestamp else "-",
                level=Level.MEDIUM.label,
                host=str(record.get("Event.System.Computer", "-")),
                event_id=event_id,
                title="Suspicious PowerShell command",
                message="; ".join(findings),
            ))
        return alerts


def _decode_utf16(blob: str) -> str | None:
    try:
        return base64.b64decode(blob, validate=True).decode("utf-16-le")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
