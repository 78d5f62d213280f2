import requests
import base64
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Any, Optional
import urllib.parse

logger = logging.getLogger(__name__)

# Azure DevOps accepts at most 200 IDs in a single work items call
MAX_IDS_IN_SINGLE_CALL = 200
MAX_FETCH_WORKERS = 8

ROLLUP_SOURCE_TYPES = ["Feature"]
ROLLUP_TARGET_TYPES = ["Feature", "Requirement", "Task", "Bug"]


class AzureDevOpsAuthenticationError(Exception):
    """Custom exception for Azure DevOps authentication errors"""
    pass


class AzureDevOpsApiError(Exception):
    """An Azure DevOps REST call failed"""

    def __init__(self, operation: str, url: str, status_code: Optional[int] = None, detail: str = ""):
        self.operation = operation
        self.url = url
        self.status_code = status_code
        message = f"{operation} failed"
        if status_code is not None:
            message += f" with status {status_code}"
        message += f": {url}"
        if detail:
            message += f" - {detail[:200]}"
        super().__init__(message)


def get_ado_list_from_array(values: Optional[List[str]]) -> Optional[str]:
    """
    Convert a list of strings into a WIQL list literal like ('a','b')

    Returns None for an empty or missing list.
    """
    if not values:
        return None
    return "(" + ",".join(f"'{_escape(v)}'" for v in values) + ")"


def _escape(value: str) -> str:
    # Escape single quotes by doubling them
    return str(value).replace("'", "''")


class AzureDevOpsService:
    def __init__(self, pat: str, organization: str, project: str, api_version: str = "7.0"):
        self.organization = organization
        self.project = project
        # URL-encode project name to handle spaces/special characters
        encoded_project = urllib.parse.quote(project)
        self.org_url = f"https://dev.azure.com/{organization}/_apis"
        self.base_url = f"https://dev.azure.com/{organization}/{encoded_project}/_apis"
        encoded_pat = self._encode_pat(pat)
        self.headers = {
            "Authorization": f"Basic {encoded_pat}",
            "Content-Type": "application/json"
        }
        self.api_version = api_version

    def _encode_pat(self, pat: str) -> str:
        """Encode the Personal Access Token for use in the Authorization header"""
        # Azure DevOps expects the PAT to be encoded as "username:pat"
        # where username can be empty
        token = f":{pat}"
        return base64.b64encode(token.encode()).decode('utf-8')

    def _check_response(self, response: requests.Response, operation: str, url: str) -> Any:
        """Raise on auth or API errors, otherwise return the parsed JSON body"""
        if response.status_code == 401:
            logger.error("Azure DevOps authentication failed - Invalid PAT token")
            raise AzureDevOpsAuthenticationError("Invalid Azure DevOps PAT token. Please check your credentials.")

        if not response.ok:
            logger.error(f"{operation} error: {response.status_code} - {response.text[:500]}")
            raise AzureDevOpsApiError(operation, url, response.status_code, response.text)

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError):
            logger.error(f"Failed to parse Azure DevOps response for {operation}: {response.text[:500]}")
            raise AzureDevOpsApiError(operation, url, response.status_code,
                                      "Failed to parse Azure DevOps response")

    def build_rollup_query(self, area_paths: List[str], iteration_path: Optional[str] = None,
                           query_extension: Optional[str] = None) -> str:
        """
        Build the recursive parent/child query used for cost rollups

        Args:
            area_paths: Area paths both parents and children must be in
            iteration_path: Optional iteration the top level items must be in
            query_extension: Optional extra WIQL condition ANDed onto the query

        Returns:
            WIQL query over WorkItemLinks
        """
        area_list = get_ado_list_from_array(area_paths)
        if not area_list:
            raise ValueError("At least one area path is required to build the rollup query")

        query_parts = [
            f"[System.Links.LinkType] = 'System.LinkTypes.Hierarchy-Forward'",
            f"Source.[System.WorkItemType] in {get_ado_list_from_array(ROLLUP_SOURCE_TYPES)}",
            f"Source.[System.AreaPath] in {area_list}",
            f"Target.[System.AreaPath] in {area_list}",
            f"Target.[System.WorkItemType] in {get_ado_list_from_array(ROLLUP_TARGET_TYPES)}",
        ]
        if iteration_path:
            query_parts.append(f"Source.[System.IterationPath] = '{_escape(iteration_path)}'")
        if query_extension:
            query_parts.append(f"({query_extension})")

        where_clause = " AND ".join(query_parts)
        return f"SELECT [System.Id] FROM WorkItemLinks WHERE {where_clause} MODE (Recursive)"

    def build_projection_query(self, area_paths: List[str], iteration_path: str,
                               query_extension: Optional[str] = None) -> str:
        """Build the flat Feature query, in stack rank order, used for projections"""
        area_list = get_ado_list_from_array(area_paths)
        if not area_list:
            raise ValueError("At least one area path is required to build the projection query")

        query_parts = [
            "[System.WorkItemType] in ('Feature')",
            f"[System.AreaPath] in {area_list}",
            f"[System.IterationPath] under '{_escape(iteration_path)}'",
        ]
        if query_extension:
            query_parts.append(f"({query_extension})")

        where_clause = " AND ".join(query_parts)
        return (f"SELECT [System.Id] FROM WorkItems WHERE {where_clause} "
                f"ORDER BY [Microsoft.VSTS.Common.StackRank] ASC")

    def run_wiql(self, query: str) -> Dict[str, Any]:
        """Execute an ad hoc WIQL query"""
        url = f"{self.base_url}/wit/wiql?api-version={self.api_version}"
        logger.debug(f"Executing WIQL query: {query}")
        response = requests.post(url, headers=self.headers, json={"query": query})
        return self._check_response(response, "WIQL query", url)

    def run_saved_query(self, query_id: str) -> Dict[str, Any]:
        """Execute a saved query by its ID; it has to be a tree (WorkItemLinks) query"""
        url = f"{self.base_url}/wit/wiql/{urllib.parse.quote(query_id)}?api-version={self.api_version}"
        logger.info(f"Running saved query {query_id}")
        response = requests.get(url, headers=self.headers)
        return self._check_response(response, "Saved query", url)

    def _get_fields_page(self, ids: List[int], field_names: List[str]) -> Dict[int, Dict[str, Any]]:
        ids_string = ",".join(map(str, ids))
        fields_string = ",".join(field_names)
        url = (f"{self.base_url}/wit/workitems?ids={ids_string}&fields={fields_string}"
               f"&api-version={self.api_version}")
        logger.debug(f"GET work item fields for {len(ids)} items")

        response = requests.get(url, headers=self.headers)
        data = self._check_response(response, "Work item fields fetch", url)

        # The response is {count, value} where value is the list of work items
        return {item["id"]: item.get("fields", {}) for item in data.get("value", [])}

    def get_work_item_fields(self, ids: List[int], field_names: List[str],
                             max_ids_per_call: int = MAX_IDS_IN_SINGLE_CALL) -> Dict[int, Dict[str, Any]]:
        """
        Fetch the given fields for many work items

        Requests go out concurrently in pages of up to max_ids_per_call IDs. All
        pages have to succeed, otherwise the first error is raised.

        Returns:
            Mapping of work item ID to its raw field values
        """
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return {}

        pages = [unique_ids[i:i + max_ids_per_call] for i in range(0, len(unique_ids), max_ids_per_call)]
        logger.info(f"Fetching fields for {len(unique_ids)} work items in {len(pages)} requests")

        results: Dict[int, Dict[str, Any]] = {}
        with ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(pages))) as pool:
            futures = [pool.submit(self._get_fields_page, page, field_names) for page in pages]
            for future in futures:
                results.update(future.result())

        logger.info(f"Fetched fields for {len(results)} work items")
        return results

    def submit_patch_batch(self, patch_requests: List[Dict[str, Any]]) -> Any:
        """Submit a list of per item PATCH requests through the $batch endpoint"""
        url = f"{self.org_url}/wit/$batch?api-version={self.api_version}"
        logger.info(f"Submitting batch of {len(patch_requests)} work item updates")
        response = requests.post(url, headers=self.headers, json=patch_requests)
        return self._check_response(response, "Work item batch update", url)
