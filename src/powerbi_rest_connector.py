"""
Power BI REST Connector
Async wrappers around the Power BI REST API, authenticated through AuthManager
"""
import asyncio
import functools
import json
import logging
from typing import Any, Dict, List, Optional

import requests

from powerbi_errors import UpstreamFailure

logger = logging.getLogger(__name__)


class PowerBIRestConnector:
    """
    Power BI connector using the REST API only

    Every request fetches the bearer token from the shared AuthManager, so a
    configuration change is picked up on the next call. The blocking requests
    calls run in the default executor.
    """

    BASE_URL = "https://api.powerbi.com/v1.0/myorg"

    def __init__(self, auth, timeout: int = 60, session: Optional[requests.Session] = None):
        self.auth = auth
        self.timeout = timeout
        self._session = session or requests.Session()

    async def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers with authorization"""
        token = await self.auth.get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None
    ) -> Any:
        headers = await self._get_headers()
        call = functools.partial(self._send, method, url, headers, json_body, timeout or self.timeout)
        return await asyncio.get_event_loop().run_in_executor(None, call)

    def _send(self, method: str, url: str, headers: Dict[str, str], json_body: Optional[Dict[str, Any]], timeout: int) -> Any:
        logger.debug(f"{method} {url}")
        try:
            response = self._session.request(method, url, headers=headers, json=json_body, timeout=timeout)
        except requests.RequestException as e:
            raise UpstreamFailure(f"Power BI request failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamFailure(
                f"Power BI API returned {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500] or response.reason or "no details"
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get('message') or error.get('code') or json.dumps(error)
        if error:
            return str(error)
        return json.dumps(body)[:500]

    def _dataset_url(self, dataset_id: str, group_id: Optional[str] = None) -> str:
        if group_id:
            return f"{self.BASE_URL}/groups/{group_id}/datasets/{dataset_id}"
        return f"{self.BASE_URL}/datasets/{dataset_id}"

    # ==================== WORKSPACES / DATASETS ====================

    async def list_workspaces(self) -> List[Dict[str, Any]]:
        """List all workspaces the caller can access"""
        data = await self._request("GET", f"{self.BASE_URL}/groups")
        return (data or {}).get('value', [])

    async def list_datasets(self, group_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List datasets in a workspace, or in My Workspace when no group is given"""
        if group_id:
            url = f"{self.BASE_URL}/groups/{group_id}/datasets"
        else:
            url = f"{self.BASE_URL}/datasets"
        data = await self._request("GET", url)
        return (data or {}).get('value', [])

    async def get_dataset(self, dataset_id: str, group_id: Optional[str] = None) -> Dict[str, Any]:
        """Get information about one dataset"""
        return await self._request("GET", self._dataset_url(dataset_id, group_id)) or {}

    async def refresh_dataset(self, dataset_id: str, group_id: Optional[str] = None) -> None:
        """Queue a dataset refresh"""
        await self._request(
            "POST",
            f"{self._dataset_url(dataset_id, group_id)}/refreshes",
            {"notifyOption": "NoNotification"},
        )
        logger.info(f"Refresh queued for dataset {dataset_id}")

    async def get_refresh_history(self, dataset_id: str, group_id: Optional[str] = None, top: int = 10) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{self._dataset_url(dataset_id, group_id)}/refreshes?$top={top}")
        return (data or {}).get('value', [])

    # ==================== SCHEMA / QUERIES ====================

    async def get_semantic_model_schema(self, dataset_id: str) -> Dict[str, Any]:
        """
        Get tables, measures and relationships of a semantic model

        Tables are required; measures and relationships are not exposed for
        every dataset type, so their failures degrade to empty lists.
        """
        base = self._dataset_url(dataset_id)

        async def optional(url: str) -> List[Dict[str, Any]]:
            try:
                data = await self._request("GET", url)
            except UpstreamFailure as e:
                logger.debug(f"Optional schema part unavailable ({url}): {e}")
                return []
            return (data or {}).get('value', [])

        tables_data, measures, relationships = await asyncio.gather(
            self._request("GET", f"{base}/tables"),
            optional(f"{base}/measures"),
            optional(f"{base}/relationships"),
        )

        return {
            'tables': (tables_data or {}).get('value', []),
            'measures': measures,
            'relationships': relationships,
        }

    async def execute_query(
        self,
        dataset_id: str,
        dax_query: str,
        clear_cache: bool = False,
        impersonated_user: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Execute a DAX query through the executeQueries endpoint

        Args:
            dataset_id: Semantic model id
            dax_query: DAX query (EVALUATE ...)
            clear_cache: Ask the engine for a cold-cache evaluation
            impersonated_user: Evaluate under this user's row-level security

        Returns:
            Raw executeQueries response
        """
        body: Dict[str, Any] = {
            "queries": [{"query": dax_query}],
            "serializerSettings": {"includeNulls": True},
        }
        if impersonated_user:
            body["impersonatedUserName"] = impersonated_user
        elif clear_cache:
            body["impersonatedUserName"] = None
        return await self._request("POST", f"{self._dataset_url(dataset_id)}/executeQueries", body) or {}

    async def generate_dax_query(self, dataset_id: str, question: str, schema_context: Optional[Any] = None) -> Dict[str, Any]:
        """Ask Copilot for Power BI to turn a natural language question into DAX"""
        body: Dict[str, Any] = {"question": question}
        if schema_context:
            body["schemaContext"] = schema_context
        try:
            return await self._request("POST", f"{self._dataset_url(dataset_id)}/generateDaxQuery", body) or {}
        except UpstreamFailure as e:
            raise UpstreamFailure(
                f"DAX generation through Copilot failed ({e.message}). "
                "Check that the organization has a Copilot license for Power BI.",
                status_code=e.status_code,
            ) from e

    async def execute_tmsl(self, xmla_endpoint: str, command: Dict[str, Any]) -> Any:
        """Send a TMSL command to an XMLA endpoint"""
        if not xmla_endpoint:
            raise UpstreamFailure("No XMLA endpoint configured for this operation")
        body = {"execute": {"Commands": [{"Statement": json.dumps(command)}]}}
        return await self._request("POST", xmla_endpoint, body, timeout=120)

    async def discover(self, xmla_endpoint: str, request_type: str, restrictions: Optional[Dict[str, Any]] = None) -> Any:
        """Run an XMLA Discover request (TMSCHEMA_* rowsets) against an XMLA endpoint"""
        if not xmla_endpoint:
            raise UpstreamFailure("No XMLA endpoint configured for this operation")
        body = {"discover": {"RequestType": request_type, "Restrictions": restrictions or {}}}
        return await self._request("POST", xmla_endpoint, body)


def first_table_rows(result: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Rows of the first table of an executeQueries response"""
    try:
        return result['results'][0]['tables'][0].get('rows', []) or []
    except (KeyError, IndexError, TypeError):
        return []
