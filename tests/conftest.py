"""Shared fixtures: an in-memory stand-in for the Azure DevOps REST API."""

import pytest

from services.azure_devops_service import AzureDevOpsClient, AzureDevOpsService

ORGANIZATION = "acme"
BASE_URL = f"https://dev.azure.com/{ORGANIZATION}"


class FakeResponse:
    """Minimal requests.Response replacement."""

    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeAzureDevOps:
    """Routes session.request(method, url) calls to canned responses.

    A route can hold a single response, an exception to raise, or a list that is
    consumed one item per call.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.calls.append({
            "method": method, "url": url, "headers": headers, "json": json, "timeout": timeout,
        })
        route = self.routes.get((method, url))
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if route is None:
            return FakeResponse(404, text=f"No route for {method} {url}")
        if isinstance(route, Exception):
            raise route
        return route

    def add(self, method, path, response):
        self.routes[(method, f"{BASE_URL}{path}")] = response

    def urls(self):
        return [call["url"] for call in self.calls]

    # Endpoint helpers

    def projects(self, names, status=200, text=None):
        payload = {"count": len(names), "value": [{"id": f"id-{n}", "name": n} for n in names]}
        self.add("GET", "/_apis/projects?api-version=6.0",
                 FakeResponse(status, payload if status < 400 else None, text))

    def iterations(self, project, paths, status=200, text=None):
        payload = {"value": [{"name": p.split("\\")[-1], "path": p} for p in paths]}
        self.add("GET", f"/{project}/_apis/work/teamsettings/iterations?api-version=7.1",
                 FakeResponse(status, payload if status < 400 else None, text))

    def wiql(self, project, ids, status=200, text=None):
        payload = {"queryType": "flat", "workItems": [{"id": i, "url": work_item_url(i)} for i in ids]}
        self.add("POST", f"/{project}/_apis/wit/wiql?api-version=6.0",
                 FakeResponse(status, payload if status < 400 else None, text))

    def epic(self, project, epic_id, fields=None, child_ids=(), relations=None, status=200, text=None):
        if relations is None:
            relations = [
                {"rel": "System.LinkTypes.Hierarchy-Forward", "url": work_item_url(c), "attributes": {}}
                for c in child_ids
            ]
        payload = {"id": epic_id, "fields": fields or {}, "relations": relations}
        self.add("GET", f"/{project}/_apis/wit/workitems/{epic_id}?$expand=relations&api-version=6.0",
                 FakeResponse(status, payload if status < 400 else None, text))

    def child(self, project, child_id, story_points=None, status=200, text=None):
        fields = {"System.WorkItemType": "Product Backlog Item"}
        if story_points is not None:
            fields["Microsoft.VSTS.Scheduling.StoryPoints"] = story_points
        self.add("GET", f"/{project}/_apis/wit/workitems/{child_id}?api-version=6.0",
                 FakeResponse(status, {"id": child_id, "fields": fields} if status < 400 else None, text))


def work_item_url(work_item_id):
    return f"{BASE_URL}/_apis/wit/workItems/{work_item_id}"


@pytest.fixture
def ado():
    return FakeAzureDevOps()


@pytest.fixture
def client(ado):
    return AzureDevOpsClient("secret-pat", ORGANIZATION, session=ado)


@pytest.fixture
def service(client):
    return AzureDevOpsService(client)
