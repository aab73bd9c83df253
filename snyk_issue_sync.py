#!/usr/bin/env python3
"""
Snyk Issue Sync

Pulls the open issues of a Snyk project, filters them by severity, exploit
maturity, priority score and issue type, drops the issues that already have a
ticket and returns the rest enriched with their dependency paths (open source
and license issues) or their full detail (Snyk Code issues).

The result is a mapping of issue ID to issue record, ready for a ticketing
stage to consume.

Usage:
    from snyk_issue_sync import SnykAPI, FilterOptions, get_issues_without_tickets

    snyk_api = SnykAPI(token, region="SNYK-EU-01")
    options = FilterOptions.from_values(severity="high", maturity_filter=["mature"])
    issues = get_issues_without_tickets(snyk_api, org_id, project_id, options, tickets)
"""

import json
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

_verbose_enabled = False


class Config:
    """Configuration class for centralized settings management."""

    # API Settings
    CODE_ISSUES_API_VERSION = "2021-08-20~experimental"
    REQUEST_TIMEOUT = 60  # seconds

    # Filter Settings
    SEVERITY_ORDER = ['critical', 'high', 'medium', 'low']
    EXPLOIT_MATURITY_LEVELS = ['no-data', 'no-known-exploit', 'proof-of-concept', 'mature']
    ISSUE_TYPES = ['vuln', 'license', 'configuration']
    DEFAULT_ISSUE_TYPES = ['vuln', 'license']
    MIN_PRIORITY_SCORE = 0
    MAX_PRIORITY_SCORE = 1000

    # Default Values
    DEFAULT_REGION = "SNYK-US-01"
    DEFAULT_SEVERITY = "low"
    DEFAULT_ISSUE_TYPE = "all"

    REGION_URLS = {
        "SNYK-US-01": "https://api.snyk.io",
        "SNYK-US-02": "https://api.us.snyk.io",
        "SNYK-EU-01": "https://api.eu.snyk.io",
        "SNYK-AU-01": "https://api.au.snyk.io"
    }


def set_verbose_enabled(value: bool) -> None:
    global _verbose_enabled
    _verbose_enabled = bool(value)


def vprint(msg: str) -> None:
    if _verbose_enabled:
        print(msg)


class SnykSyncError(Exception):
    """
    Base exception for every failure of the issue pipeline.

    The runner catches this type, prints it and exits; library callers get
    the exception itself.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {type(self.cause).__name__}: {str(self.cause)})"
        return self.message


class ConfigurationError(SnykSyncError):
    """Invalid user supplied option. Raised before any request is sent."""

    pass


class SnykAPIError(SnykSyncError):
    """
    A request to the Snyk API failed.

    Carries the request context so the message tells which endpoint,
    organization, project and issue were involved.
    """

    def __init__(self, message: str, endpoint: str = "", org_id: str = "",
                 project_id: str = "", issue_id: str = "",
                 status_code: Optional[int] = None, cause: Optional[Exception] = None):
        context = f"endpoint {endpoint} org {org_id} project {project_id}"
        if issue_id:
            context += f" issue {issue_id}"
        if status_code is not None:
            context += f" (HTTP {status_code})"
        super().__init__(f"{message} from {context}", cause=cause)
        self.endpoint = endpoint
        self.org_id = org_id
        self.project_id = project_id
        self.issue_id = issue_id
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class ResponseDecodeError(SnykAPIError):
    """The Snyk API answered with a body that is not the expected JSON."""

    pass


class Severity(Enum):
    CRITICAL = 'critical'
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'

    @classmethod
    def parse(cls, value: str) -> 'Severity':
        """
        Parse a severity threshold.

        Only the exact lowercase names are accepted, anything else raises
        ConfigurationError.
        """
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(
                f"Unexpected severity threshold '{value}'. "
                f"Must be one of [{','.join(Config.SEVERITY_ORDER)}]"
            ) from None

    def cumulative(self) -> List[str]:
        """
        Severities included by this threshold.

        A threshold includes itself and every level above it, so ``low`` is
        the widest filter and ``critical`` the narrowest.
        """
        order = Config.SEVERITY_ORDER
        return order[:order.index(self.value) + 1]


def create_maturity_filter(filters: Iterable[str]) -> List[str]:
    """
    Validate exploit maturity levels.

    Empty entries are skipped so that a trailing comma on the command line
    is harmless.

    Args:
        filters: List of maturity levels as typed by the user

    Returns:
        List of valid maturity levels, in input order
    """
    if not isinstance(filters, (list, tuple)):
        raise ConfigurationError(
            f"Maturity filter must be a list of levels, got {type(filters).__name__}"
        )

    maturity_filter = []
    for level in filters:
        if not isinstance(level, str):
            raise ConfigurationError(f"Maturity level must be a string, got {level!r}")
        level = level.strip()
        if not level:
            continue
        if level not in Config.EXPLOIT_MATURITY_LEVELS:
            raise ConfigurationError(
                f"{level} is not a valid maturity level. "
                f"Levels must be one of [{','.join(Config.EXPLOIT_MATURITY_LEVELS)}]"
            )
        maturity_filter.append(level)
    return maturity_filter


@dataclass(frozen=True)
class FilterOptions:
    """Validated user options driving the issue query."""

    severity: Severity = Severity.LOW
    issue_type: str = Config.DEFAULT_ISSUE_TYPE
    priority_score_threshold: int = 0
    maturity_filter: Tuple[str, ...] = ()

    @classmethod
    def from_values(cls, severity: str = Config.DEFAULT_SEVERITY,
                    issue_type: Optional[str] = Config.DEFAULT_ISSUE_TYPE,
                    priority_score_threshold: int = 0,
                    maturity_filter: Optional[Iterable[str]] = None) -> 'FilterOptions':
        """
        Build options from raw values, validating every one of them.

        Raises:
            ConfigurationError: if any value is out of its allowed set
        """
        issue_type = (issue_type or "").strip()
        if issue_type not in ("", Config.DEFAULT_ISSUE_TYPE) and issue_type not in Config.ISSUE_TYPES:
            raise ConfigurationError(
                f"{issue_type} is not a valid issue type. "
                f"Must be one of [all,{','.join(Config.ISSUE_TYPES)}]"
            )

        try:
            score = int(priority_score_threshold or 0)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Priority score threshold must be an integer, got '{priority_score_threshold}'"
            ) from None
        if not Config.MIN_PRIORITY_SCORE <= score <= Config.MAX_PRIORITY_SCORE:
            raise ConfigurationError(
                f"Priority score threshold must be between {Config.MIN_PRIORITY_SCORE} "
                f"and {Config.MAX_PRIORITY_SCORE}, got {score}"
            )

        return cls(
            severity=Severity.parse(severity),
            issue_type=issue_type or Config.DEFAULT_ISSUE_TYPE,
            priority_score_threshold=score,
            maturity_filter=tuple(create_maturity_filter(maturity_filter or [])),
        )


def build_issues_filter(options: FilterOptions) -> Dict:
    """
    Translate filter options into the aggregated-issues request body.

    Args:
        options: Validated filter options

    Returns:
        Dictionary ready to be sent as the JSON body
    """
    types = list(Config.DEFAULT_ISSUE_TYPES)
    if options.issue_type not in ("", Config.DEFAULT_ISSUE_TYPE):
        types = [options.issue_type]

    filters = {
        'severities': options.severity.cumulative(),
        'priority': {
            'score': {
                'min': options.priority_score_threshold if options.priority_score_threshold > 0 else 0,
                'max': Config.MAX_PRIORITY_SCORE
            }
        },
        'types': types,
        'ignored': False,
        'patched': False
    }
    if options.maturity_filter:
        filters['exploitMaturity'] = list(options.maturity_filter)

    return {'filters': filters}


class SnykAPI:
    """Snyk API client for the v1 aggregated issues and v3 code issue endpoints."""

    def __init__(self, token: str, region: str = Config.DEFAULT_REGION,
                 base_url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.token = token
        self.base_url = (base_url or self._get_base_url(region)).rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({
            'Authorization': f'token {token}',
            'Content-Type': 'application/json',
            'Accept': '*/*'
        })

    def _get_base_url(self, region: str) -> str:
        """Get the appropriate API base URL for the region."""
        return Config.REGION_URLS.get(region, "https://api.snyk.io")

    def _request(self, method: str, url: str, org_id: str, project_id: str,
                 issue_id: str = "", **kwargs) -> Dict:
        """
        Send a request and decode its JSON body.

        Raises:
            SnykAPIError: on transport errors and non-2xx answers
            ResponseDecodeError: when the body is not JSON
        """
        vprint(f"   🔗 API URL: {method} {url}")
        try:
            response = self.session.request(method, url, timeout=Config.REQUEST_TIMEOUT, **kwargs)
            vprint(f"   📥 Response status: {response.status_code}")
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            status_code = None
            if getattr(e, 'response', None) is not None:
                status_code = e.response.status_code
            raise SnykAPIError(
                "Request failed", endpoint=self.base_url, org_id=org_id,
                project_id=project_id, issue_id=issue_id,
                status_code=status_code, cause=e
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise ResponseDecodeError(
                "Could not decode JSON response", endpoint=self.base_url, org_id=org_id,
                project_id=project_id, issue_id=issue_id,
                status_code=response.status_code, cause=e
            ) from e

    def get_aggregated_issues(self, org_id: str, project_id: str, body: Dict) -> Dict:
        """
        Fetch the aggregated open source and license issues of a project.

        Args:
            org_id: Organization ID
            project_id: Project ID
            body: Filter body, see build_issues_filter

        Returns:
            Decoded response, the issues live under the 'issues' key
        """
        url = f"{self.base_url}/v1/org/{org_id}/project/{project_id}/aggregated-issues"
        return self._request('POST', url, org_id, project_id, json=body)

    def get_issue_paths(self, org_id: str, project_id: str, issue_id: str) -> Dict:
        """
        Fetch the dependency paths through which an issue is introduced.

        Args:
            org_id: Organization ID
            project_id: Project ID
            issue_id: Issue ID, e.g. SNYK-JS-LODASH-567746

        Returns:
            Decoded response, the paths live under the 'paths' key
        """
        url = f"{self.base_url}/v1/org/{org_id}/project/{project_id}/issue/{issue_id}/paths"
        return self._request('GET', url, org_id, project_id, issue_id=issue_id)

    def code_issues_url(self, org_id: str, project_id: str, severity: Optional[str] = None) -> str:
        """Build the first page URL of the code issue listing for one severity level."""
        params = {'project_id': project_id}
        if severity:
            params['severity'] = severity
        params['version'] = Config.CODE_ISSUES_API_VERSION
        return f"{self.base_url}/v3/orgs/{org_id}/issues?{urlencode(params)}"

    def get_code_issues_page(self, url: str, org_id: str, project_id: str) -> Dict:
        """
        Fetch one page of the code issue listing.

        A 404 means the project has no code issue at this level and is
        returned as an empty page.

        Raises:
            ResponseDecodeError: when the page is not an object holding a
                'data' list of issue objects and an optional 'links' object
        """
        try:
            data = self._request('GET', url, org_id, project_id)
        except SnykAPIError as e:
            if e.is_not_found:
                vprint(f"   ℹ️  No code issues at {url}")
                return {}
            raise

        issues = data.get('data') if isinstance(data, dict) else None
        links = data.get('links') if isinstance(data, dict) else None
        if (not isinstance(data, dict)
                or not isinstance(issues or [], list)
                or not all(isinstance(issue, dict) for issue in issues or [])
                or not isinstance(links or {}, dict)):
            raise ResponseDecodeError(
                f"Unexpected code issues page {url}", endpoint=self.base_url,
                org_id=org_id, project_id=project_id
            )
        return data

    def get_code_issue_detail(self, org_id: str, project_id: str, issue_id: str) -> Dict:
        """
        Fetch detailed information for a specific code issue.

        Args:
            org_id: Organization ID
            project_id: Project ID
            issue_id: Code issue ID

        Returns:
            Dictionary containing the issue details
        """
        params = {'project_id': project_id, 'version': Config.CODE_ISSUES_API_VERSION}
        url = f"{self.base_url}/v3/orgs/{org_id}/issues/detail/code/{issue_id}?{urlencode(params)}"
        return self._request('GET', url, org_id, project_id, issue_id=issue_id)

    def resolve_next_url(self, next_url: Optional[str]) -> Optional[str]:
        """Turn a 'links.next' value into an absolute URL, None when there is no next page."""
        if not next_url:
            return None
        if next_url.startswith('http'):
            return next_url
        if next_url.startswith('/'):
            return self.base_url + next_url
        return self.base_url + '/' + next_url.lstrip('/')


class IssueKind(Enum):
    OPEN_SOURCE = 'open-source'
    CODE = 'code'
    CONFIGURATION = 'configuration'


def _issue_elements(aggregated: Dict) -> List[Dict]:
    issues = aggregated.get('issues')
    if isinstance(issues, list):
        return [issue for issue in issues if isinstance(issue, dict)]
    return []


def _license_elements(aggregated: Dict) -> List[Dict]:
    # Older responses group issues by kind: {"issues": {"licenses": [...]}}
    issues = aggregated.get('issues')
    if isinstance(issues, dict):
        return [issue for issue in issues.get('licenses') or [] if isinstance(issue, dict)]
    return []


def classify_aggregated_issues(aggregated: Dict) -> IssueKind:
    """
    Decide which enrichment path a project takes.

    The aggregated endpoint answers with an empty list for Snyk Code
    projects, and with 'configuration' issues for IaC projects.
    """
    elements = _issue_elements(aggregated)
    if not elements:
        if _license_elements(aggregated):
            return IssueKind.OPEN_SOURCE
        return IssueKind.CODE

    if elements[0].get('issueType', '') == 'configuration':
        return IssueKind.CONFIGURATION
    return IssueKind.OPEN_SOURCE


class IssueCollector:
    """Collect the issues of a project that do not have a ticket yet."""

    def __init__(self, snyk_api: SnykAPI, org_id: str, tickets: Optional[Mapping[str, str]] = None):
        self.snyk_api = snyk_api
        self.org_id = org_id
        self.tickets = tickets if tickets is not None else {}

    def _needs_ticket(self, issue_id: Optional[str]) -> bool:
        return bool(issue_id) and issue_id not in self.tickets

    def collect(self, project_id: str, options: FilterOptions) -> Dict[str, Dict]:
        """
        Fetch, filter and enrich the issues of a project.

        Args:
            project_id: Project ID
            options: Validated filter options

        Returns:
            Mapping of issue ID to enriched issue record, empty for IaC projects
        """
        body = build_issues_filter(options)
        vprint(f"   📤 Request data: {json.dumps(body)}")

        print(f"🔍 Fetching issues for project {project_id}...")
        aggregated = self.snyk_api.get_aggregated_issues(self.org_id, project_id, body)
        if not isinstance(aggregated, dict):
            raise ResponseDecodeError(
                "Unexpected aggregated issues response", endpoint=self.snyk_api.base_url,
                org_id=self.org_id, project_id=project_id
            )

        kind = classify_aggregated_issues(aggregated)
        if kind is IssueKind.CONFIGURATION:
            print(f"   ℹ️  IaC projects are not supported, skipping project {project_id}")
            return {}
        if kind is IssueKind.CODE:
            issues = self.collect_code_issues(project_id, options.severity)
        else:
            issues = self.collect_open_source_issues(project_id, aggregated)

        print(f"   ✅ Found {len(issues)} issues without tickets")
        return issues

    def collect_open_source_issues(self, project_id: str, aggregated: Dict) -> Dict[str, Dict]:
        """
        Enrich open source and license issues with their dependency paths.

        Vulnerabilities of the 'issues' list and the nested 'issues.licenses'
        entries that have an ID and no ticket are copied, get their paths
        under the 'from' key, and are stored under their ID. License entries
        of the flat list are left out.

        Args:
            project_id: Project ID
            aggregated: Decoded aggregated-issues response

        Returns:
            Mapping of issue ID to issue record
        """
        candidates = [issue for issue in _issue_elements(aggregated)
                      if issue.get('issueType') == 'vuln']
        candidates.extend(_license_elements(aggregated))

        issues_with_paths = {}
        for issue in candidates:
            issue_id = issue.get('id')
            if not self._needs_ticket(issue_id):
                continue

            path_data = self.snyk_api.get_issue_paths(self.org_id, project_id, issue_id)
            if not isinstance(path_data, dict):
                raise ResponseDecodeError(
                    "Unexpected paths response", endpoint=self.snyk_api.base_url,
                    org_id=self.org_id, project_id=project_id, issue_id=issue_id
                )

            record = dict(issue)
            record['from'] = path_data.get('paths')
            issues_with_paths[issue_id] = record

        return issues_with_paths

    def collect_code_issues(self, project_id: str, severity: Severity) -> Dict[str, Dict]:
        """
        Collect Snyk Code issues with their full detail.

        The v3 listing filters on one exact severity, so every level included
        by the threshold is queried in turn and the results are merged by ID.
        The detail payload carries no title, the listing's title is added.

        Args:
            project_id: Project ID
            severity: Severity threshold

        Returns:
            Mapping of issue ID to code issue detail
        """
        code_issues = {}

        for level in severity.cumulative():
            url = self.snyk_api.code_issues_url(self.org_id, project_id, level)
            page = 1

            while url:
                print(f"   📄 Fetching {level} code issues page {page}...")
                data = self.snyk_api.get_code_issues_page(url, self.org_id, project_id)

                for issue in data.get('data') or []:
                    issue_id = issue.get('id')
                    if not self._needs_ticket(issue_id):
                        continue

                    detail = self.snyk_api.get_code_issue_detail(self.org_id, project_id, issue_id)
                    if not isinstance(detail, dict):
                        raise ResponseDecodeError(
                            "Unexpected code issue detail response", endpoint=self.snyk_api.base_url,
                            org_id=self.org_id, project_id=project_id, issue_id=issue_id
                        )

                    record = dict(detail)
                    record['title'] = (issue.get('attributes') or {}).get('title') or ''
                    code_issues[issue_id] = record

                url = self.snyk_api.resolve_next_url((data.get('links') or {}).get('next'))
                page += 1

        return code_issues


def get_issues_without_tickets(snyk_api: SnykAPI, org_id: str, project_id: str,
                               options: FilterOptions,
                               tickets: Optional[Mapping[str, str]] = None) -> Dict[str, Dict]:
    """Return the enriched issues of a project that are not in the ticket index."""
    return IssueCollector(snyk_api, org_id, tickets).collect(project_id, options)


def load_tickets(filename: str) -> Dict[str, str]:
    """
    Load the index of issues that already have a ticket.

    JSON files hold an object of issue ID to ticket ID. CSV files need an
    'issue_id' and a 'ticket_id' column and are read with pandas.

    Args:
        filename: Path to a .json or .csv file

    Returns:
        Mapping of issue ID to ticket ID
    """
    if not os.path.isfile(filename):
        raise ConfigurationError(f"Tickets file {filename} not found")

    if filename.lower().endswith('.csv'):
        import pandas as pd

        try:
            df = pd.read_csv(filename, dtype=str).fillna('')
        except (ValueError, OSError) as e:
            raise ConfigurationError(f"Could not read tickets file {filename}", cause=e) from e
        missing = {'issue_id', 'ticket_id'} - set(df.columns)
        if missing:
            raise ConfigurationError(
                f"Tickets file {filename} is missing column(s): {', '.join(sorted(missing))}"
            )
        tickets = {row['issue_id'].strip(): row['ticket_id'].strip()
                   for row in df.to_dict('records') if row['issue_id'].strip()}
    else:
        try:
            with open(filename, encoding='utf-8') as f:
                data = json.load(f)
        except (ValueError, OSError) as e:
            raise ConfigurationError(f"Could not read tickets file {filename}", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Tickets file {filename} must hold a JSON object")
        tickets = {str(issue_id): str(ticket_id) for issue_id, ticket_id in data.items()}

    print(f"   ✅ Loaded {len(tickets)} existing tickets")
    return tickets


def save_issues_to_json(results: Dict[str, Dict[str, Dict]], filename: str):
    """Save the issues collected per project to a JSON file for the ticketing stage."""
    with open(filename, 'w', encoding='utf-8') as f:
        json.dump(results, f, indent=2, default=str)
    total = sum(len(issues) for issues in results.values())
    print(f"✅ Saved {total} issues from {len(results)} projects to {filename}")
