# tests/conftest.py
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

# Ensure the repo root is in sys.path for imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from snyk_issue_sync import SnykAPI, set_verbose_enabled  # noqa: E402

BASE_URL = "https://api.snyk.test"
ORG_ID = "123"
PROJECT_ID = "123"
CODE_VERSION = "2021-08-20~experimental"


def make_response(status_code, payload):
    """Build a requests.Response stand-in. A payload of None makes json() fail."""
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    else:
        response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Client Error", response=response
        )
    return response


class FakeSession:
    """Route requests to canned responses keyed by (method, url)."""

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = dict(routes or {})
        self.calls = []

    def add(self, method, url, payload, status_code=200):
        self.routes[(method, url)] = (status_code, payload)

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if (method, url) not in self.routes:
            raise requests.exceptions.ConnectionError(f"No route for {method} {url}")
        status_code, payload = self.routes[(method, url)]
        return make_response(status_code, payload)

    def urls(self, method=None):
        return [url for m, url, _ in self.calls if method is None or m == method]


def aggregated_url(project_id=PROJECT_ID):
    return f"{BASE_URL}/v1/org/{ORG_ID}/project/{project_id}/aggregated-issues"


def paths_url(issue_id, project_id=PROJECT_ID):
    return f"{BASE_URL}/v1/org/{ORG_ID}/project/{project_id}/issue/{issue_id}/paths"


def code_list_url(severity, project_id=PROJECT_ID):
    return (f"{BASE_URL}/v3/orgs/{ORG_ID}/issues?project_id={project_id}"
            f"&severity={severity}&version={CODE_VERSION}")


def code_detail_url(issue_id, project_id=PROJECT_ID):
    return (f"{BASE_URL}/v3/orgs/{ORG_ID}/issues/detail/code/{issue_id}"
            f"?project_id={project_id}&version={CODE_VERSION}")


@pytest.fixture(autouse=True)
def quiet():
    set_verbose_enabled(False)
    yield
    set_verbose_enabled(False)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def snyk_api(session):
    return SnykAPI("123", base_url=BASE_URL, session=session)


@pytest.fixture
def open_source_response():
    # Three vulnerabilities as returned by the aggregated-issues endpoint
    return {
        "issues": [
            {
                "id": "SNYK-JS-PACRESOLVER-1564857",
                "issueType": "vuln",
                "pkgName": "pac-resolver",
                "pkgVersions": ["3.0.0"],
                "issueData": {"title": "Remote Code Execution (RCE)", "severity": "high"},
                "priorityScore": 726,
            },
            {
                "id": "SNYK-JS-LODASH-567746",
                "issueType": "vuln",
                "pkgName": "lodash",
                "pkgVersions": ["4.17.15"],
                "issueData": {"title": "Prototype Pollution", "severity": "medium"},
                "priorityScore": 601,
            },
            {
                "id": "SNYK-JS-MINIMIST-559764",
                "issueType": "vuln",
                "pkgName": "minimist",
                "pkgVersions": ["1.2.0"],
                "issueData": {"title": "Prototype Pollution", "severity": "low"},
                "priorityScore": 370,
            },
        ]
    }


@pytest.fixture
def paths_response():
    return {
        "snykVulnId": "SNYK-JS-LODASH-567746",
        "paths": [
            [
                {"name": "goof", "version": "1.0.1"},
                {"name": "lodash", "version": "4.17.15"},
            ]
        ],
    }
