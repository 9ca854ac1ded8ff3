import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def parse_sse_lines(lines: Iterable[str]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (event, data) pairs from SSE text lines; comments are skipped."""
    event = "message"
    data_lines: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                try:
                    yield event, json.loads("\n".join(data_lines))
                except ValueError:
                    yield event, {"raw": "\n".join(data_lines)}
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
    if data_lines:
        try:
            yield event, json.loads("\n".join(data_lines))
        except ValueError:
            yield event, {"raw": "\n".join(data_lines)}


def _print_report(report: Dict[str, Any]) -> None:
    print()
    print(f"Opener: {report.get('opener', '')}")
    for idx, item in enumerate(report.get("questions") or [], start=1):
        print(f"{idx}. {item.get('q')}")
        print(f"   why: {item.get('why')}")
    analytics = report.get("analytics") or {}
    flow = analytics.get("meetingFlow") or []
    if flow:
        print("Meeting flow: " + ", ".join(f"{step.get('label')} ({step.get('value'):g} min)" for step in flow))
    for viz in report.get("visualizations") or []:
        print(f"[{viz.get('type')}] {viz.get('title')}")


def _exit_code_for(error: Dict[str, Any]) -> int:
    return EXIT_TIMEOUT if error.get("code") == "timeout" else EXIT_FAILED


def _read_notes(args: argparse.Namespace) -> str:
    if args.notes_file:
        return Path(args.notes_file).read_text()
    return args.notes or ""


def run_report(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"linkedinUrl": args.url, "additionalNotes": _read_notes(args)}
    timeout = httpx.Timeout(args.timeout, connect=10)
    with httpx.Client(timeout=timeout) as client:
        if args.sync:
            try:
                resp = client.post(_join_url(base, "/api/report/sync"), json=payload)
            except httpx.TimeoutException:
                print("Timed out waiting for the dossier.")
                return EXIT_TIMEOUT
            data = resp.json()
            if resp.status_code >= 400:
                print(f"Report failed: HTTP {resp.status_code}: {data.get('error')}")
                return EXIT_TIMEOUT if resp.status_code == 504 else EXIT_FAILED
            if args.json:
                print(json.dumps(data, indent=2))
            else:
                _print_report(data)
            return EXIT_OK

        try:
            with client.stream("POST", _join_url(base, "/api/report"), json=payload) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    print(f"Report failed: HTTP {resp.status_code}: {resp.text}")
                    return EXIT_FAILED
                for event, data in parse_sse_lines(resp.iter_lines()):
                    if event == "error" or "error" in data:
                        print(f"Error ({data.get('code', 'failed')}): {data.get('error')}")
                        return _exit_code_for(data)
                    if data.get("done"):
                        report = data.get("report") or {}
                        if args.json:
                            print(json.dumps(report, indent=2))
                        else:
                            _print_report(report)
                        return EXIT_OK
                    if "text" in data:
                        print(f"... {data['text']}")
                    elif "partial_opener" in data:
                        print(f"  opener: {data['partial_opener']}")
                    elif "partial_question" in data:
                        question = data["partial_question"] or {}
                        print(f"  question {data.get('question_index', 0) + 1}: {question.get('q')}")
        except httpx.TimeoutException:
            print("Timed out waiting for the stream.")
            return EXIT_TIMEOUT
    print("Stream ended without a result.")
    return EXIT_FAILED


def run_health(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/health"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch health: HTTP {resp.status_code}")
            return EXIT_FAILED
        data = resp.json()
        research = "on" if data.get("research_enabled") else "off"
        print(f"ok={data.get('ok')} model={data.get('model')} research={research}")
    return EXIT_OK


def run_tools(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/tools"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch tools: HTTP {resp.status_code}")
            return EXIT_FAILED
        for tool in resp.json().get("tools") or []:
            marker = " (completion)" if tool.get("completion") else ""
            print(f"- {tool.get('name')}{marker}: {tool.get('description')}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="meetprep CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    report = subparsers.add_parser("report", help="Prepare a meeting dossier")
    report.add_argument("url", help="LinkedIn profile URL")
    notes = report.add_mutually_exclusive_group()
    notes.add_argument("--notes", help="Notes about the meeting")
    notes.add_argument("--notes-file", help="Read meeting notes from a file")
    report.add_argument("--sync", action="store_true", help="Use the non-streaming endpoint")
    report.add_argument("--json", action="store_true", help="Print the dossier as JSON")
    report.add_argument("--timeout", type=float, default=330, help="Max wait seconds")

    subparsers.add_parser("health", help="Show service health")
    subparsers.add_parser("tools", help="List the tool catalogue")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "report":
        return run_report(args)
    if args.command == "health":
        return run_health(args)
    if args.command == "tools":
        return run_tools(args)
    parser.print_help()
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
