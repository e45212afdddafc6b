import requests
import base64
import logging
import threading
import urllib.parse
from typing import List, Dict, Any, Iterable, Optional

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from services.config_service import ConfigurationError, Settings, DEFAULT_BASE_URL
from services.models import EpicRecord, Relation, WorkItemId

logger = logging.getLogger(__name__)

FIELD_STATE = "System.State"
FIELD_TITLE = "System.Title"
FIELD_EFFORT = "Microsoft.VSTS.Scheduling.Effort"
FIELD_STORY_POINTS = "Microsoft.VSTS.Scheduling.StoryPoints"

ITERATION_SEPARATOR = "\\"
MISSING_TEXT = "N/A"


class AzureDevOpsError(Exception):
    """Base exception for Azure DevOps failures"""
    pass


class AzureDevOpsHttpError(AzureDevOpsError):
    """A request failed, either in transport or with a non-success status"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: str = "", url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.url = url

    @property
    def is_transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class AzureDevOpsAuthenticationError(AzureDevOpsHttpError):
    """Custom exception for Azure DevOps authentication errors"""
    pass


def _is_transient_error(exc: BaseException) -> bool:
    return isinstance(exc, AzureDevOpsHttpError) and exc.is_transient


class AzureDevOpsClient:
    """Authenticated JSON client for the Azure DevOps REST API of one organization"""

    def __init__(self, pat: str, organization: str, base_url: str = DEFAULT_BASE_URL,
                 timeout: float = 30.0, max_retries: int = 0,
                 session: Optional[requests.Session] = None):
        if not pat:
            raise ConfigurationError(
                "Personal Access Token (PAT) is missing. "
                "Please set the environment variable AZURE_DEVOPS_PAT."
            )
        self.organization = organization
        self.base_url = f"{base_url.rstrip('/')}/{urllib.parse.quote(organization)}"
        self.headers = {
            "Authorization": f"Basic {self._encode_pat(pat)}",
            "Content-Type": "application/json"
        }
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_wait = wait_exponential(multiplier=1, min=1, max=30)
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """The injected session, or one requests.Session per thread"""
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    @classmethod
    def from_settings(cls, settings: Settings,
                      session: Optional[requests.Session] = None) -> "AzureDevOpsClient":
        return cls(
            pat=settings.pat,
            organization=settings.organization,
            base_url=settings.base_url,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            session=session,
        )

    def _encode_pat(self, pat: str) -> str:
        """Encode the Personal Access Token for use in the Authorization header"""
        # Azure DevOps expects "username:pat" where username is empty
        token = f":{pat}"
        return base64.b64encode(token.encode()).decode('utf-8')

    def request(self, method: str, url: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issue an authenticated request and return the parsed JSON payload

        Args:
            method: HTTP method
            url: Absolute URL
            json_body: Optional body, sent as JSON

        Returns:
            Parsed JSON. The shape is whatever the server sent; callers validate it.

        Raises:
            AzureDevOpsAuthenticationError: On 401/403
            AzureDevOpsHttpError: On any other non-success status, transport
                failure, timeout or unparseable body
        """
        if self.max_retries <= 0:
            return self._send(method, url, json_body)

        retrying = Retrying(
            retry=retry_if_exception(_is_transient_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.retry_wait,
            reraise=True,
        )
        return retrying(self._send, method, url, json_body)

    def get(self, path: str) -> Any:
        return self.request("GET", f"{self.base_url}{path}")

    def post(self, path: str, body: Dict[str, Any]) -> Any:
        return self.request("POST", f"{self.base_url}{path}", json_body=body)

    def _send(self, method: str, url: str, json_body: Optional[Dict[str, Any]]) -> Any:
        logger.debug(f"API Call: {method} {url}")

        try:
            response = self.session.request(
                method,
                url,
                headers=self.headers,
                json=json_body,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request to Azure DevOps failed: {method} {url}: {str(e)}")
            raise AzureDevOpsHttpError(
                f"Request to Azure DevOps failed: {str(e)}", body=str(e), url=url
            ) from e

        logger.debug(f"API Call Response Status: {response.status_code}")

        if response.status_code in (401, 403):
            logger.error("Azure DevOps authentication failed - Invalid PAT token")
            raise AzureDevOpsAuthenticationError(
                "Invalid Azure DevOps PAT token. Please check your credentials.",
                status_code=response.status_code, body=response.text, url=url
            )

        if not response.ok:
            logger.error(f"API Error: {response.status_code} - {response.text}")
            raise AzureDevOpsHttpError(
                f"{response.status_code} - {response.text}",
                status_code=response.status_code, body=response.text, url=url
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Failed to parse Azure DevOps response: {response.text}")
            raise AzureDevOpsHttpError(
                "Failed to parse Azure DevOps response. Please check your credentials and try again.",
                status_code=response.status_code, body=response.text, url=url
            ) from e


def collapse_iteration_path(path: str, depth: int = 2,
                            separator: str = ITERATION_SEPARATOR) -> str:
    """
    Collapse an iteration path to its first `depth` segments

    "Alpha\\Q1\\Sprint 1" becomes "Alpha\\Q1" with the default depth. A depth of 0
    leaves every path unchanged.
    """
    if depth <= 0 or separator not in path:
        return path
    return separator.join(path.split(separator)[:depth])


def unique_iteration_paths(paths: Iterable[str], depth: int = 2) -> List[str]:
    """Collapse paths and drop repeats, keeping first-seen order"""
    seen = set()
    result = []
    for path in paths:
        collapsed = collapse_iteration_path(path, depth)
        if collapsed not in seen:
            seen.add(collapsed)
            result.append(collapsed)
    return result


def _escape_wiql(value: str) -> str:
    # WIQL escapes single quotes by doubling them
    return value.replace("'", "''")


def build_epic_query(iteration: str) -> str:
    return (
        "SELECT [System.Id] FROM WorkItems "
        f"WHERE [System.IterationPath] = '{_escape_wiql(iteration)}' "
        "AND [System.WorkItemType] = 'Epic'"
    )


def _get_text(fields: Dict[str, Any], name: str) -> str:
    value = fields.get(name)
    return MISSING_TEXT if value is None else str(value)


def _get_number(fields: Dict[str, Any], name: str) -> float:
    value = fields.get(name)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Field '{name}' has non-numeric value {value!r}, using 0")
        return 0.0


def _get_list(payload: Any, key: str) -> List[Any]:
    if not isinstance(payload, dict):
        return []
    value = payload.get(key)
    return value if isinstance(value, list) else []


def _get_fields(work_item: Any) -> Dict[str, Any]:
    if not isinstance(work_item, dict):
        return {}
    fields = work_item.get("fields")
    return fields if isinstance(fields, dict) else {}


def _require(value: str, label: str) -> None:
    if not value or not value.strip():
        raise ValueError(f"{label} is required")


class AzureDevOpsService:
    """Project, iteration and work item lookups used by the Epic effort report"""

    def __init__(self, client: AzureDevOpsClient, iteration_path_depth: int = 2,
                 fail_epic_on_child_error: bool = False):
        self.client = client
        self.iteration_path_depth = iteration_path_depth
        self.fail_epic_on_child_error = fail_epic_on_child_error

    @classmethod
    def from_settings(cls, settings: Settings,
                      session: Optional[requests.Session] = None) -> "AzureDevOpsService":
        return cls(
            AzureDevOpsClient.from_settings(settings, session=session),
            iteration_path_depth=settings.iteration_path_depth,
            fail_epic_on_child_error=settings.fail_epic_on_child_error,
        )

    def _project_path(self, project: str) -> str:
        return "/" + urllib.parse.quote(project, safe="")

    def list_projects(self) -> List[str]:
        """Fetch the names of all projects visible to the PAT, sorted ascending ignoring case"""
        logger.info("Fetching projects...")
        data = self.client.get("/_apis/projects?api-version=6.0")

        names = [
            project["name"]
            for project in _get_list(data, "value")
            if isinstance(project, dict) and project.get("name") is not None
        ]
        names.sort(key=str.casefold)

        logger.info(f"Found {len(names)} projects")
        return names

    def list_iterations(self, project: str) -> List[str]:
        """
        Fetch the team iterations of a project as collapsed, de-duplicated paths

        Args:
            project: Project name

        Returns:
            Collapsed iteration paths in the order they were first listed
        """
        _require(project, "Project name")
        logger.info(f"Fetching iterations for project {project}...")

        data = self.client.get(
            f"{self._project_path(project)}/_apis/work/teamsettings/iterations?api-version=7.1"
        )
        paths = [
            iteration["path"]
            for iteration in _get_list(data, "value")
            if isinstance(iteration, dict) and iteration.get("path")
        ]
        iterations = unique_iteration_paths(paths, self.iteration_path_depth)

        logger.info(f"Found {len(iterations)} iterations ({len(paths)} before collapsing)")
        return iterations

    def find_epic_ids(self, project: str, iteration: str) -> List[WorkItemId]:
        """Run a WIQL query for the Epics in an iteration and return their IDs in query order"""
        _require(project, "Project name")
        _require(iteration, "Iteration path")

        wiql_query = build_epic_query(iteration)
        logger.debug(f"Executing WIQL query: {wiql_query}")

        data = self.client.post(
            f"{self._project_path(project)}/_apis/wit/wiql?api-version=6.0",
            {"query": wiql_query}
        )
        epic_ids = [
            item["id"]
            for item in _get_list(data, "workItems")
            if isinstance(item, dict) and item.get("id") is not None
        ]

        logger.info(f"Found {len(epic_ids)} Epic work items in {iteration}")
        return epic_ids

    def fetch_epic(self, project: str, epic_id: WorkItemId) -> EpicRecord:
        """Fetch an Epic with its relations expanded"""
        work_item = self.client.get(
            f"{self._project_path(project)}/_apis/wit/workitems/"
            f"{urllib.parse.quote(str(epic_id))}?$expand=relations&api-version=6.0"
        )
        fields = _get_fields(work_item)

        relations = []
        for relation in _get_list(work_item, "relations"):
            if isinstance(relation, dict):
                relations.append(Relation(rel=relation.get("rel") or "", url=relation.get("url") or ""))

        return EpicRecord(
            id=epic_id,
            state=_get_text(fields, FIELD_STATE),
            title=_get_text(fields, FIELD_TITLE),
            effort=_get_number(fields, FIELD_EFFORT),
            relations=relations,
        )

    def fetch_story_points(self, project: str, work_item_id: WorkItemId) -> float:
        work_item = self.client.get(
            f"{self._project_path(project)}/_apis/wit/workitems/"
            f"{urllib.parse.quote(str(work_item_id))}?api-version=6.0"
        )
        return _get_number(_get_fields(work_item), FIELD_STORY_POINTS)

    def sum_child_story_points(self, project: str, relations: Iterable[Relation]) -> float:
        """
        Sum the story points of the direct children reached through hierarchy-forward links

        A child that cannot be fetched contributes 0 unless fail_epic_on_child_error
        is set, in which case the error is raised.
        """
        total = 0.0
        for relation in relations:
            if not relation.is_hierarchy_forward:
                continue

            child_id = relation.child_id
            try:
                total += self.fetch_story_points(project, child_id)
            except AzureDevOpsError as e:
                if self.fail_epic_on_child_error:
                    raise
                logger.warning(f"Could not fetch child work item {child_id}, counting 0: {str(e)}")

        return total
