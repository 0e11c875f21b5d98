"""
Server copies: named aliases of a server that expose only an allowlist
of its methods over the original's connection.
"""

from typing import List, Optional

from mcp_gateway.core.base import Resource
from mcp_gateway.core.exceptions import NotFoundError, ValidationError
from mcp_gateway.core.models import ServerRecord, ToolInfo
from mcp_gateway.core.registry import ConnectionRegistry
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

EMPTY_METHODS_WARNING = "No allowed methods remain; the original no longer advertises any of them"


class CapabilityProxy(Resource):
    """Creates, updates and reconciles server copies."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        registry.on_tools_changed(self._tools_changed)

    def _original(self, name: str) -> ServerRecord:
        if not self.registry.has(name):
            raise NotFoundError(f"Server '{name}' not found", details={"server": name})
        original = self.registry.get_record(name)
        if original.is_copy:
            raise ValidationError(
                f"Server '{name}' is itself a copy; copies cannot be chained",
                details={"server": name},
            )
        return original

    @staticmethod
    def _check_methods(original: ServerRecord, allowed_methods: List[str]) -> List[str]:
        available = set(original.tool_names)
        missing = [m for m in allowed_methods if m not in available]
        if missing:
            raise ValidationError(
                f"Methods not provided by server '{original.name}': {', '.join(missing)}",
                details={"server": original.name, "missing": missing},
            )
        return allowed_methods

    def _copy(self, name: str) -> ServerRecord:
        if not self.registry.has(name):
            raise NotFoundError(f"Server copy '{name}' not found", details={"server": name})
        record = self.registry.get_record(name)
        if not record.is_copy:
            raise ValidationError(f"Server '{name}' is not a copy", details={"server": name})
        return record

    async def create(self, original_name: str, new_name: str, allowed_methods: List[str]) -> ServerRecord:
        """
        Create a copy of ``original_name`` exposing ``allowed_methods``.

        Raises:
            NotFoundError: Original does not exist
            ValidationError: Original is a copy, or a method is not advertised
            ConflictError: ``new_name`` is taken
        """
        original = self._original(original_name)
        self._check_methods(original, allowed_methods)

        record = ServerRecord(
            name=new_name,
            transport_type=original.transport_type,
            is_copy=True,
            original_name=original.name,
            allowed_methods=allowed_methods,
            enabled=True,
        )
        if not record.allowed_methods:
            record.warning = EMPTY_METHODS_WARNING
        view = self.registry.register_copy(record)
        logger.info(f"Created server copy: {record}", extra={"server": new_name})
        return view

    async def update_methods(self, copy_name: str, allowed_methods: List[str]) -> ServerRecord:
        """Replace a copy's allowed methods."""
        record = self._copy(copy_name)
        original = self._original(record.original_name)
        self._check_methods(original, allowed_methods)

        record.allowed_methods = list(dict.fromkeys(allowed_methods))
        record.warning = None if record.allowed_methods else EMPTY_METHODS_WARNING
        logger.info(f"Updated methods of copy '{copy_name}'", extra={"server": copy_name})
        return self.registry.save(record)

    async def delete(self, copy_name: str) -> None:
        """Remove a copy; the original is untouched."""
        self._copy(copy_name)
        await self.registry.delete(copy_name)

    async def reconcile(self, original_name: str, tools: Optional[List[ToolInfo]] = None) -> List[ServerRecord]:
        """
        Prune dependent copies to the original's advertised tools.

        Copies are never deleted; a copy left with no methods carries a
        warning until methods are granted again.

        Returns:
            Copies whose allowed methods changed
        """
        if tools is None:
            tools = self.registry.get_record(original_name).tools
        available = {tool.name for tool in tools}

        changed: List[ServerRecord] = []
        for record in self.registry.copies_of(original_name):
            allowed = record.allowed_methods or []
            pruned = [m for m in allowed if m in available]
            if pruned == allowed:
                continue
            removed = [m for m in allowed if m not in available]
            logger.warning(
                f"Copy '{record.name}' lost methods no longer advertised by '{original_name}': "
                f"{', '.join(removed)}",
                extra={"server": record.name},
            )
            record.allowed_methods = pruned
            record.warning = None if pruned else EMPTY_METHODS_WARNING
            changed.append(self.registry.save(record))
        return changed

    async def _tools_changed(self, name: str, tools: List[ToolInfo]) -> None:
        await self.reconcile(name, tools)
