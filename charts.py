"""Serve one ``GET_GRAPH`` request: authenticate, resolve, fetch and cache."""

import dataclasses
import logging
from typing import Optional, Union

import httpx

import zbx
import dashboard
from storage import CredentialStore, GraphMetadata, MetadataCache, graph_cache_key
from zbx import ChartConfig, ErrorKind, ZabbixError

logger = logging.getLogger(__name__)


class ChartService:
    """Owns the session and metadata caches shared by overlapping requests."""

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        metadata: Optional[MetadataCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials if credentials is not None else CredentialStore()
        self.metadata = metadata if metadata is not None else MetadataCache()
        self.transport = transport

    async def authenticate(self, config: ChartConfig) -> Optional[str]:
        """Return a session token, logging in only when none is cached."""
        if zbx.uses_api_token(config):
            return None

        if not config.username or not config.password:
            raise ZabbixError(
                "Missing username/password or apiToken in configuration",
                ErrorKind.CONFIGURATION,
            )

        key = zbx.credential_key(config)
        token = self.credentials.get(key)
        if token:
            return token

        token = await zbx.login(config, self.transport)
        self.credentials.set(key, token)
        return token

    async def fetch_graph_metadata(self, config: ChartConfig, auth: Optional[str]) -> GraphMetadata:
        graph = await zbx.call(
            "graph.get",
            {"graphids": [config.graph_id], "output": "extend"},
            config,
            auth,
            transport=self.transport,
        )
        if not graph:
            raise ZabbixError(
                f"Graph {config.graph_id} was not found",
                ErrorKind.NOT_FOUND,
                invalidate_metadata=True,
            )

        items = await zbx.call(
            "graphitem.get",
            {"graphids": [config.graph_id], "output": "extend"},
            config,
            auth,
            transport=self.transport,
        )
        return GraphMetadata(title=graph[0].get("name", ""), items=list(items or []))

    async def handle_request(self, request: Union[ChartConfig, dict]) -> dict:
        """Return a ``GRAPH_RESULT`` payload: the graph, or ``{"error": ...}``."""
        config = request if isinstance(request, ChartConfig) else ChartConfig.from_dict(request)
        cache_key = None
        try:
            dashboard.reject_direct_graph(config)
            auth = await self.authenticate(config)
            resolved = await dashboard.resolve_graph_reference(config, auth, self.transport)
            effective = dataclasses.replace(
                config,
                graph_id=resolved.graph_id,
                width=resolved.width,
                height=resolved.height,
                **resolved.time_config,
            )

            cache_key = graph_cache_key(effective)
            metadata = self.metadata.get(cache_key) if cache_key else None
            if metadata is None:
                metadata = await self.fetch_graph_metadata(effective, auth)
            if resolved.title and resolved.title != metadata.title:
                metadata = dataclasses.replace(metadata, title=resolved.title)
            if cache_key:
                self.metadata.set(cache_key, metadata)

            image = await zbx.chart_png(effective, auth, self.transport)
        except Exception as e:
            return self._failure(config, e, cache_key)

        return {
            "title": metadata.title,
            "graphId": resolved.graph_id,
            "width": effective.width,
            "height": effective.height,
            "items": list(metadata.items),
            "image": image,
        }

    def _failure(self, config: ChartConfig, error: Exception, cache_key: Optional[str]) -> dict:
        target = config.dashboard_id or config.graph_id or "unknown"
        logger.error("Failed to load graph for %s: %s", target, error)
        if not isinstance(error, ZabbixError):
            logger.exception("Unexpected error while loading graph", exc_info=error)
            return {"error": str(error) or "Unknown error"}

        if error.log_details:
            logger.error("Details: %s", error.log_details)
        if error.auth_reset_key:
            self.credentials.evict(error.auth_reset_key)
        if cache_key and (error.auth_reset_key or error.invalidate_metadata):
            self.metadata.evict(cache_key)
        return {"error": error.display_message}
