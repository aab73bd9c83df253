#!/usr/bin/env python3
"""
List Issues Without Tickets

Collect the Snyk issues of one or more projects that do not have a ticket yet
and save them, enriched with dependency paths or code issue details, to a JSON
file for the ticketing stage.

Usage:
    python3 list_issues_without_tickets.py --org-id YOUR_ORG_ID --project-id YOUR_PROJECT_ID
    python3 list_issues_without_tickets.py --org-id YOUR_ORG_ID --project-id P1 --project-id P2 --severity high
    python3 list_issues_without_tickets.py --org-id YOUR_ORG_ID --project-id P1 --tickets tickets.csv --output issues.json
"""

import argparse
import os
import sys
from datetime import datetime
from typing import Dict, List

from snyk_issue_sync import (
    Config,
    FilterOptions,
    IssueCollector,
    SnykAPI,
    SnykSyncError,
    load_tickets,
    save_issues_to_json,
    set_verbose_enabled,
)


def print_summary(results: Dict[str, Dict[str, Dict]], options: FilterOptions):
    """
    Print a summary of the collected issues.

    Args:
        results: Mapping of project ID to the issues collected for it
        options: Filter options used for the run
    """
    print(f"\n{'='*80}")
    print(f"📊 ISSUES WITHOUT TICKETS SUMMARY")
    print(f"{'='*80}")
    print(f"Severity threshold: {options.severity.value}")
    print(f"Issue type: {options.issue_type}")
    if options.priority_score_threshold:
        print(f"Priority score threshold: {options.priority_score_threshold}")
    if options.maturity_filter:
        print(f"Exploit maturity: {', '.join(options.maturity_filter)}")

    total = 0
    print(f"\nBreakdown by Project:")
    for project_id, issues in results.items():
        print(f"   {project_id}: {len(issues)}")
        total += len(issues)
    print(f"\nTotal Issues Without Tickets: {total}")
    print(f"{'='*80}")


def parse_maturity(value: str) -> List[str]:
    return value.split(',') if value else []


def main():
    parser = argparse.ArgumentParser(
        description="List Snyk issues that do not have a ticket yet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Issues of a project, all severities
  python3 list_issues_without_tickets.py --org-id abc123 --project-id def456

  # High and critical issues with a known mature exploit
  python3 list_issues_without_tickets.py --org-id abc123 --project-id def456 --severity high --maturity mature

  # Skip issues already ticketed and save the result
  python3 list_issues_without_tickets.py --org-id abc123 --project-id def456 --tickets tickets.json --output issues.json
        """
    )

    parser.add_argument('--org-id', required=True,
                        help='Snyk organization ID')
    parser.add_argument('--project-id', action='append', required=True,
                        help='Snyk project ID (repeat for several projects)')
    parser.add_argument('--severity', default=Config.DEFAULT_SEVERITY,
                        help='Severity threshold: critical, high, medium or low (default: low)')
    parser.add_argument('--type', dest='issue_type', default=Config.DEFAULT_ISSUE_TYPE,
                        help='Issue type: all, vuln, license or configuration (default: all)')
    parser.add_argument('--priority-score', type=int, default=0,
                        help='Minimum priority score, 0 disables the floor (default: 0)')
    parser.add_argument('--maturity', default='',
                        help='Comma separated exploit maturity levels: '
                             'no-data,no-known-exploit,proof-of-concept,mature')
    parser.add_argument('--tickets',
                        help='JSON or CSV file of issues that already have a ticket')
    parser.add_argument('--snyk-region', default=Config.DEFAULT_REGION,
                        help='Snyk API region (default: SNYK-US-01)')
    parser.add_argument('--api-url',
                        help='Snyk API base URL, overrides --snyk-region')
    parser.add_argument('--output',
                        help='Output JSON file (default: issues_without_tickets_<timestamp>.json)')
    parser.add_argument('--debug', action='store_true',
                        help='Print every API request')

    args = parser.parse_args()
    set_verbose_enabled(args.debug)

    # Get Snyk token
    snyk_token = os.environ.get('SNYK_TOKEN')
    if not snyk_token:
        print("❌ Error: SNYK_TOKEN environment variable is required")
        sys.exit(1)

    try:
        options = FilterOptions.from_values(
            severity=args.severity,
            issue_type=args.issue_type,
            priority_score_threshold=args.priority_score,
            maturity_filter=parse_maturity(args.maturity)
        )

        tickets = {}
        if args.tickets:
            print(f"📄 Loading existing tickets from {args.tickets}...")
            tickets = load_tickets(args.tickets)

        print("🔧 Initializing Snyk API client...")
        snyk_api = SnykAPI(snyk_token, args.snyk_region, base_url=args.api_url)
        collector = IssueCollector(snyk_api, args.org_id, tickets)

        results = {}
        for i, project_id in enumerate(args.project_id, 1):
            print(f"\n[{i}/{len(args.project_id)}] Processing project: {project_id}")
            issues = collector.collect(project_id, options)
            results[project_id] = issues

        print_summary(results, options)

        output_file = args.output
        if not output_file:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_file = f"issues_without_tickets_{timestamp}.json"
        save_issues_to_json(results, output_file)

    except SnykSyncError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    print("\n🎉 Processing complete!")


if __name__ == "__main__":
    main()
