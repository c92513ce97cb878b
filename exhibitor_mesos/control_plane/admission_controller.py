"""
exhibitor_mesos/control_plane/admission_controller.py
─────────────────────────────────────────────────────
Admission control: semantic validation of admin requests.

The admission controller runs BEFORE any admin operation touches the
cluster. Everything it rejects is an operator mistake, reported back with a
reason; nothing it rejects ever reaches storage.

What it checks
───────────────
  1. Server ids: non-empty, no whitespace, commas, "=" or "/". Ids end up
     inside Mesos task ids and in "k=v,k=v" request strings.

  2. Config options: a flat option map (as typed by the operator) is split
     into Exhibitor command-line options and shared-config overrides. Every
     key must belong to exactly one of the two known sets.

  3. Pinned ZooKeeper ports (client-port, connect-port, election-port)
     must be port numbers; the scheduler reserves them from offers.

  4. Text forms: constraint strings ("hostname=unique") and port ranges
     ("31000..32000") must parse.

What it does NOT check
───────────────────────
  • Whether the server exists or is in the right state - that's the
    orchestration service's job, under the cluster lock.
  • Whether any agent can actually satisfy the constraints - that's the
    scheduler's job, offer by offer.
"""

from __future__ import annotations

import re
from typing import Dict, List, Tuple

from placement_core import Range, parse_constraints, parse_ranges

from exhibitor_mesos.shared.models import ZK_PORT_OPTIONS

EXHIBITOR_OPTIONS = frozenset({
    "configtype",
    "zkconfigconnect",
    "zkconfigzpath",
    "zkconfigexhibitorpath",
    "zkconfigexhibitorport",
    "zkconfigpollms",
    "zkconfigretry",
    "s3credentials",
    "s3region",
    "s3config",
    "s3configprefix",
    "fsconfigdir",
    "fsconfiglockprefix",
    "fsconfigname",
    "filesystembackup",
    "hostname",
    "port",
    "timeout",
    "defaultconfig",
    "headingtext",
    "nodemodification",
    "jquerystyle",
    "loglines",
    "servo",
    "prefspath",
    "aclid",
    "aclperms",
    "aclscheme",
})
"""Exhibitor command-line options. Stored in TaskConfig.exhibitor_config."""

SHARED_OPTIONS = frozenset({
    "zookeeper-install-directory",
    "zookeeper-data-directory",
    "zookeeper-log-directory",
    "log-index-directory",
    "servers-spec",
    "backup-extra",
    "zoo-cfg-extra",
    "java-environment",
    "log4j-properties",
    "client-port",
    "connect-port",
    "election-port",
    "check-ms",
    "cleanup-period-ms",
    "cleanup-max-files",
    "backup-max-store-ms",
    "backup-period-ms",
    "auto-manage-instances",
    "auto-manage-instances-settling-period-ms",
    "auto-manage-instances-fixed-ensemble-size",
    "auto-manage-instances-apply-all-at-once",
    "observer-threshold",
})
"""Shared ensemble configuration keys. Stored in TaskConfig.shared_config_override."""

_INVALID_ID_RE = re.compile(r"[\s,=/]")


class AdmissionRejectedError(Exception):
    """
    Raised when an admin request fails admission control.

    Attributes:
        reason: Human-readable explanation of why the request was rejected.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def parse_map(text: str) -> Dict[str, str]:
    """
    Parse "k=v,k2=v2" into an ordered dict. Values may contain "=".

        parse_map("id=0,cpu=0.6,mem=128") → {"id": "0", "cpu": "0.6", "mem": "128"}
    """
    result: Dict[str, str] = {}
    if not text or not text.strip():
        return result
    for token in text.split(","):
        if not token.strip():
            continue
        if "=" not in token:
            raise AdmissionRejectedError(f"invalid option {token!r}, expected key=value")
        key, value = token.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def admit_server_id(server_id: str) -> None:
    """
    Raises:
        AdmissionRejectedError: empty id or id with forbidden characters.
    """
    if not server_id:
        raise AdmissionRejectedError("server id must not be empty")
    if _INVALID_ID_RE.search(server_id):
        raise AdmissionRejectedError(
            f"server id {server_id!r} must not contain whitespace, ',', '=' or '/'"
        )


def route_options(options: Dict[str, str]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Split a flat option map into (exhibitor_config, shared_config_override).

        route_options({"zkconfigconnect": "192.168.3.1:2181",
                       "zookeeper-install-directory": "/tmp/zookeeper"})
          → ({"zkconfigconnect": "192.168.3.1:2181"},
             {"zookeeper-install-directory": "/tmp/zookeeper"})

    Raises:
        AdmissionRejectedError: a key is in neither known set.
    """
    exhibitor_config: Dict[str, str] = {}
    shared_config: Dict[str, str] = {}
    unknown: List[str] = []
    for key, value in options.items():
        if key in EXHIBITOR_OPTIONS:
            exhibitor_config[key] = value
        elif key in SHARED_OPTIONS:
            shared_config[key] = value
        else:
            unknown.append(key)
    if unknown:
        raise AdmissionRejectedError(f"unknown config option(s): {', '.join(sorted(unknown))}")
    for key in ZK_PORT_OPTIONS:
        if key in shared_config:
            admit_port_number(key, shared_config[key])
    return exhibitor_config, shared_config


def admit_port_number(key: str, value: str) -> None:
    """A pinned ZooKeeper port must be a plain port number. Blank means unpinned."""
    if not value:
        return
    if not value.isdigit() or not 0 < int(value) <= 65535:
        raise AdmissionRejectedError(f"{key} must be a port number, got {value!r}")


def admit_constraints(text: str) -> dict:
    """Parse "attr=constraint,..." or reject with the parser's reason."""
    try:
        return parse_constraints(text)
    except ValueError as e:
        raise AdmissionRejectedError(f"invalid constraints {text!r}: {e}") from e


def admit_ports(text: str) -> List[Range]:
    """Parse "lo..hi,port,..." or reject with the parser's reason."""
    try:
        return parse_ranges(text)
    except ValueError as e:
        raise AdmissionRejectedError(f"invalid ports {text!r}: {e}") from e
