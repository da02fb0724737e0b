"""Read-only access to the records the engine depends on.

Connections, devices, message templates and automations are owned by the
dashboard; the engine only reads them. Two implementations are provided: an
in-memory one for tests and local runs, and a PostgreSQL one.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any, Dict, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row

from ..core.db import ConnectionFactory, read_connection
from .errors import StoreUnavailable
from .models import (
    Automation,
    Connection,
    Device,
    MessageTemplate,
    Platform,
)


class ConnectionStore(Protocol):
    def get_connection(self, connection_id: str) -> Optional[Connection]: ...


class DeviceStore(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_device_by_name(self, instance_name: str) -> Optional[Device]: ...


class TemplateStore(Protocol):
    def get_template(self, template_id: str) -> Optional[MessageTemplate]: ...


class AutomationStore(Protocol):
    def get_automation(self, automation_id: str) -> Optional[Automation]: ...

    def list_active_automations(
        self, user_id: str, platform: Platform
    ) -> List[Automation]: ...


class InMemoryStore:
    """Dictionary-backed implementation of every store protocol."""

    def __init__(
        self,
        *,
        connections: Iterable[Connection] = (),
        devices: Iterable[Device] = (),
        templates: Iterable[MessageTemplate] = (),
        automations: Iterable[Automation] = (),
    ) -> None:
        self._lock = threading.Lock()
        self.connections: Dict[str, Connection] = {c.id: c for c in connections}
        self.devices: Dict[str, Device] = {d.id: d for d in devices}
        self.templates: Dict[str, MessageTemplate] = {t.id: t for t in templates}
        self.automations: Dict[str, Automation] = {a.id: a for a in automations}

    def add(self, *records: Any) -> None:
        with self._lock:
            for record in records:
                if isinstance(record, Connection):
                    self.connections[record.id] = record
                elif isinstance(record, Device):
                    self.devices[record.id] = record
                elif isinstance(record, MessageTemplate):
                    self.templates[record.id] = record
                elif isinstance(record, Automation):
                    self.automations[record.id] = record
                else:
                    raise TypeError(f"Unsupported record type: {type(record).__name__}")

    def set_automation_active(self, automation_id: str, is_active: bool) -> None:
        with self._lock:
            current = self.automations[automation_id]
            self.automations[automation_id] = current.model_copy(
                update={"is_active": is_active}
            )

    def remove_automation(self, automation_id: str) -> None:
        with self._lock:
            self.automations.pop(automation_id, None)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def get_device(self, device_id: str) -> Optional[Device]:
        return self.devices.get(device_id)

    def get_device_by_name(self, instance_name: str) -> Optional[Device]:
        for device in list(self.devices.values()):
            if device.name == instance_name:
                return device
        return None

    def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        return self.templates.get(template_id)

    def get_automation(self, automation_id: str) -> Optional[Automation]:
        return self.automations.get(automation_id)

    def list_active_automations(
        self, user_id: str, platform: Platform
    ) -> List[Automation]:
        matches = []
        for automation in list(self.automations.values()):
            if automation.user_id != user_id or not automation.is_active:
                continue
            connection = (
                self.connections.get(automation.connection_id)
                if automation.connection_id
                else None
            )
            # Automations without a connection are only reachable by id.
            if connection is None or connection.platform is not platform:
                continue
            matches.append(automation)
        return sorted(matches, key=lambda a: a.id)


class PostgresStore:
    """PostgreSQL-backed implementation of every store protocol.

    Each call opens a short-lived connection from ``connect`` so the store
    can be shared by worker threads.
    """

    def __init__(self, connect: ConnectionFactory):
        self._connect = connect

    def _fetchone(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            with read_connection(self._connect) as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchone()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"Configuration store query failed: {exc}") from exc

    def _fetchall(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            with read_connection(self._connect) as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"Configuration store query failed: {exc}") from exc

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        row = self._fetchone(
            """
            SELECT id, user_id, platform, is_active, credentials
            FROM connections
            WHERE id = %s
            """,
            (connection_id,),
        )
        if not row:
            return None
        return Connection(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            platform=Platform.parse(row["platform"]),
            is_active=bool(row["is_active"]),
            credentials=row.get("credentials") or {},
        )

    def _row_to_device(self, row: Dict[str, Any]) -> Device:
        return Device(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            status=row["status"],
            api_url=row["api_url"],
            api_key=row["api_key"],
        )

    def get_device(self, device_id: str) -> Optional[Device]:
        row = self._fetchone(
            """
            SELECT id, user_id, name, status, api_url, api_key
            FROM devices
            WHERE id = %s
            """,
            (device_id,),
        )
        return self._row_to_device(row) if row else None

    def get_device_by_name(self, instance_name: str) -> Optional[Device]:
        row = self._fetchone(
            """
            SELECT id, user_id, name, status, api_url, api_key
            FROM devices
            WHERE name = %s
            """,
            (instance_name,),
        )
        return self._row_to_device(row) if row else None

    def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        row = self._fetchone(
            """
            SELECT id, user_id, name, content, variables
            FROM message_templates
            WHERE id = %s
            """,
            (template_id,),
        )
        if not row:
            return None
        return MessageTemplate(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            content=row["content"],
            variables=list(row.get("variables") or []),
        )

    _AUTOMATION_COLUMNS = """
        a.id, a.user_id, a.template_definition_id, a.trigger_kind,
        a.connection_id, a.device_id, a.template_id, a.config, a.is_active
    """

    def _row_to_automation(self, row: Dict[str, Any]) -> Automation:
        return Automation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            template_definition_id=row["template_definition_id"],
            trigger_kind=row["trigger_kind"],
            connection_id=str(row["connection_id"]) if row.get("connection_id") else None,
            device_id=str(row["device_id"]) if row.get("device_id") else None,
            template_id=str(row["template_id"]) if row.get("template_id") else None,
            config=row.get("config") or {},
            is_active=bool(row["is_active"]),
        )

    def get_automation(self, automation_id: str) -> Optional[Automation]:
        row = self._fetchone(
            f"SELECT {self._AUTOMATION_COLUMNS} FROM automations a WHERE a.id = %s",
            (automation_id,),
        )
        return self._row_to_automation(row) if row else None

    def list_active_automations(
        self, user_id: str, platform: Platform
    ) -> List[Automation]:
        rows = self._fetchall(
            f"""
            SELECT {self._AUTOMATION_COLUMNS}
            FROM automations a
            JOIN connections c ON c.id = a.connection_id
            WHERE a.user_id = %s AND a.is_active AND c.platform = %s
            ORDER BY a.id
            """,
            (user_id, platform.value),
        )
        return [self._row_to_automation(row) for row in rows]


__all__ = [
    "AutomationStore",
    "ConnectionStore",
    "DeviceStore",
    "InMemoryStore",
    "PostgresStore",
    "TemplateStore",
]
