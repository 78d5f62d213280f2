import base64
import json
import threading

import pytest
import requests

from services.azure_devops_service import (
    AzureDevOpsApiError,
    AzureDevOpsAuthenticationError,
    AzureDevOpsService,
    get_ado_list_from_array,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise json.JSONDecodeError("Expecting value", self.text, 0)
        return self._payload


@pytest.fixture
def service():
    return AzureDevOpsService("secret", "contoso", "Contoso Web")


def test_headers_and_urls(service):
    expected = base64.b64encode(b":secret").decode("utf-8")
    assert service.headers["Authorization"] == f"Basic {expected}"
    assert service.base_url == "https://dev.azure.com/contoso/Contoso%20Web/_apis"
    assert service.org_url == "https://dev.azure.com/contoso/_apis"


def test_get_ado_list_from_array():
    assert get_ado_list_from_array(["A", "B\\C"]) == "('A','B\\C')"
    assert get_ado_list_from_array(["O'Brien"]) == "('O''Brien')"
    assert get_ado_list_from_array([]) is None
    assert get_ado_list_from_array(None) is None


def test_build_rollup_query(service):
    query = service.build_rollup_query(["Web\\Meetings"], "Web\\2024\\Q1", "Target.[System.State] <> 'Removed'")

    assert query.startswith("SELECT [System.Id] FROM WorkItemLinks WHERE ")
    assert "[System.Links.LinkType] = 'System.LinkTypes.Hierarchy-Forward'" in query
    assert "Source.[System.AreaPath] in ('Web\\Meetings')" in query
    assert "Target.[System.WorkItemType] in ('Feature','Requirement','Task','Bug')" in query
    assert "Source.[System.IterationPath] = 'Web\\2024\\Q1'" in query
    assert "AND (Target.[System.State] <> 'Removed')" in query
    assert query.endswith("MODE (Recursive)")


def test_build_rollup_query_requires_area_paths(service):
    with pytest.raises(ValueError):
        service.build_rollup_query([])


def test_build_projection_query(service):
    query = service.build_projection_query(["Web"], "Web\\2024")

    assert "FROM WorkItems" in query
    assert "[System.IterationPath] under 'Web\\2024'" in query
    assert query.endswith("ORDER BY [Microsoft.VSTS.Common.StackRank] ASC")


def test_run_wiql_posts_query(service, monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None):
        calls.append((url, json))
        return FakeResponse(payload={"workItemRelations": []})

    monkeypatch.setattr(requests, "post", fake_post)

    assert service.run_wiql("SELECT 1") == {"workItemRelations": []}
    assert calls == [(f"{service.base_url}/wit/wiql?api-version=7.0", {"query": "SELECT 1"})]


def test_run_saved_query(service, monkeypatch):
    urls = []

    def fake_get(url, headers=None):
        urls.append(url)
        return FakeResponse(payload={"workItemRelations": [{"target": {"id": 1}}]})

    monkeypatch.setattr(requests, "get", fake_get)

    result = service.run_saved_query("abc-123")
    assert result["workItemRelations"][0]["target"]["id"] == 1
    assert urls == [f"{service.base_url}/wit/wiql/abc-123?api-version=7.0"]


def test_unauthorized_raises_authentication_error(service, monkeypatch):
    monkeypatch.setattr(requests, "post", lambda url, headers=None, json=None: FakeResponse(401, text=""))

    with pytest.raises(AzureDevOpsAuthenticationError):
        service.run_wiql("SELECT 1")


def test_api_error_carries_context(service, monkeypatch):
    monkeypatch.setattr(requests, "post",
                        lambda url, headers=None, json=None: FakeResponse(400, text="TF51005: bad query"))

    with pytest.raises(AzureDevOpsApiError) as excinfo:
        service.run_wiql("SELECT nonsense")

    assert excinfo.value.status_code == 400
    assert excinfo.value.operation == "WIQL query"
    assert "TF51005" in str(excinfo.value)


def test_unparseable_response_raises_api_error(service, monkeypatch):
    monkeypatch.setattr(requests, "post",
                        lambda url, headers=None, json=None: FakeResponse(200, payload=None, text="<html>"))

    with pytest.raises(AzureDevOpsApiError):
        service.run_wiql("SELECT 1")


def test_get_work_item_fields_pages_requests(service, monkeypatch):
    requested = []
    lock = threading.Lock()

    def fake_get(url, headers=None):
        ids_param = url.split("ids=")[1].split("&")[0]
        ids = [int(i) for i in ids_param.split(",")]
        with lock:
            requested.append(ids)
        assert "fields=System.Id,Microsoft.VSTS.Scheduling.RemainingWork" in url
        return FakeResponse(payload={
            "count": len(ids),
            "value": [{"id": i, "fields": {"System.Id": i}} for i in ids]
        })

    monkeypatch.setattr(requests, "get", fake_get)

    ids = list(range(1, 451)) + [5]
    result = service.get_work_item_fields(ids, ["System.Id", "Microsoft.VSTS.Scheduling.RemainingWork"])

    assert sorted(len(page) for page in requested) == [50, 200, 200]
    assert sorted(result) == list(range(1, 451))
    assert result[42] == {"System.Id": 42}


def test_get_work_item_fields_fails_when_any_page_fails(service, monkeypatch):
    def fake_get(url, headers=None):
        if "ids=1," in url:
            return FakeResponse(500, text="server error")
        ids = url.split("ids=")[1].split("&")[0].split(",")
        return FakeResponse(payload={"value": [{"id": int(i), "fields": {}} for i in ids]})

    monkeypatch.setattr(requests, "get", fake_get)

    with pytest.raises(AzureDevOpsApiError):
        service.get_work_item_fields(list(range(1, 301)), ["System.Id"])


def test_get_work_item_fields_with_no_ids(service):
    assert service.get_work_item_fields([], ["System.Id"]) == {}


def test_submit_patch_batch_posts_to_batch_endpoint(service, monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None):
        calls.append((url, json))
        return FakeResponse(payload={"count": 1, "value": [{"code": 200}]})

    monkeypatch.setattr(requests, "post", fake_post)

    body = [{"method": "PATCH", "uri": "/_apis/wit/workitems/1?api-version=7.0", "body": []}]
    service.submit_patch_batch(body)

    assert calls == [("https://dev.azure.com/contoso/_apis/wit/$batch?api-version=7.0", body)]
