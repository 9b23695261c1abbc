#!venv/bin/python3

from __future__ import annotations

import argparse
import dataclasses
import datetime
import itertools
import json
import logging
import os
import re
import sys
import typing
import zoneinfo

import requests

VERSION = "2026-10-17"


class ReportError(Exception):
    pass


# Transport failure or unexpected HTTP status.
class FetchError(ReportError):
    pass


# Response body is not JSON, or not JSON of the expected shape.
class DecodeError(ReportError):
    pass


def parse_date(date_str: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(date_str)


def parse_day(day_str: str) -> datetime.date:
    return datetime.datetime.strptime(day_str, "%Y-%m-%d").date()


def parse_time_zone(time_zone: str) -> str:
    try:
        zoneinfo.ZoneInfo(time_zone)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        msg = f"Unknown time zone: {time_zone}."
        raise ValueError(msg) from e
    return time_zone


# Accepts a bare host (e.g., acme.pagerduty.com) or a URL (e.g., https://acme.pagerduty.com/incidents).
def extract_endpoint_host(value: str) -> str:
    match = re.match(r"^([^/?#\s]+)", re.sub(r"^https?://", "", value.strip()))
    if not match:
        msg = f"Invalid endpoint: {value}."
        raise ValueError(msg)
    return match.group(1)


def format_timestamp(value: datetime.datetime | None) -> str:
    return value.isoformat() if value is not None else ""


@dataclasses.dataclass(frozen=True)
class Reference:
    id: str
    name: str

    def __str__(self) -> str:
        return f"({self.id},{self.name})"


@dataclasses.dataclass(frozen=True)
class Acknowledger:
    name: str
    at: datetime.datetime | None
    id: str = ""
    email: str = ""

    def __str__(self) -> str:
        return f"{self.name} - {format_timestamp(self.at)}"


@dataclasses.dataclass(frozen=True)
class Incident:
    id: str
    incident_number: int
    created_on: datetime.datetime | None
    status: str
    service: Reference
    escalation_policy: Reference
    description: str
    last_status_change_on: datetime.datetime | None
    resolved_by: str | None = None
    acknowledgers: list[Acknowledger] = dataclasses.field(default_factory=list)
    raw_data: dict[str, typing.Any] | None = None

    def __str__(self) -> str:
        return f"({self.id},#{self.incident_number},{self.status})"

    def __repr__(self) -> str:
        return f"Incident{self}"


@dataclasses.dataclass(frozen=True)
class Page:
    incidents: list[Incident]
    limit: int
    offset: int
    total: int

    def __str__(self) -> str:
        return f"(len={len(self.incidents)},limit={self.limit},offset={self.offset},total={self.total})"


# Decoders below map missing or null values to zero values and reject values of the wrong type.


def decode_object(value: typing.Any, field: str) -> dict[str, typing.Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        msg = f"Expected object for {field}, got {value!r}."
        raise DecodeError(msg)
    return value


def decode_list(value: typing.Any, field: str) -> list[typing.Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"Expected list for {field}, got {value!r}."
        raise DecodeError(msg)
    return value


def decode_str(value: typing.Any, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        msg = f"Expected string for {field}, got {value!r}."
        raise DecodeError(msg)
    return value


def decode_int(value: typing.Any, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"Expected integer for {field}, got {value!r}."
        raise DecodeError(msg)
    return value


def decode_timestamp(value: typing.Any, field: str) -> datetime.datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        msg = f"Expected timestamp for {field}, got {value!r}."
        raise DecodeError(msg)
    try:
        return parse_date(value)
    except ValueError as e:
        msg = f"Invalid timestamp for {field}: {value!r}."
        raise DecodeError(msg) from e


# The API reports the resolver as null, a plain string or a user object.
# Reduce it to str | None: user objects become their name, email or id.
def decode_resolver(value: typing.Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("name", "email", "id"):
            if isinstance(value.get(key), str) and value[key]:
                return typing.cast(str, value[key])
    return json.dumps(value, separators=(",", ":"))


def parse_reference(value: typing.Any, field: str) -> Reference:
    api_reference = decode_object(value, field)
    return Reference(
        decode_str(api_reference.get("id"), f"{field}.id"),
        decode_str(api_reference.get("name"), f"{field}.name"),
    )


def parse_acknowledger(value: typing.Any, field: str) -> Acknowledger:
    api_acknowledger = decode_object(value, field)
    actor = decode_object(api_acknowledger.get("object"), f"{field}.object")
    return Acknowledger(
        name=decode_str(actor.get("name"), f"{field}.object.name"),
        at=decode_timestamp(api_acknowledger.get("at"), f"{field}.at"),
        id=decode_str(actor.get("id"), f"{field}.object.id"),
        email=decode_str(actor.get("email"), f"{field}.object.email"),
    )


# https://v2.developer.pagerduty.com/v1/docs/incidents-list
def parse_incident(value: typing.Any) -> Incident:
    api_incident = decode_object(value, "incident")
    trigger_summary = decode_object(api_incident.get("trigger_summary_data"), "trigger_summary_data")
    incident = Incident(
        id=decode_str(api_incident.get("id"), "id"),
        incident_number=decode_int(api_incident.get("incident_number"), "incident_number"),
        created_on=decode_timestamp(api_incident.get("created_on"), "created_on"),
        status=decode_str(api_incident.get("status"), "status"),
        service=parse_reference(api_incident.get("service"), "service"),
        escalation_policy=parse_reference(api_incident.get("escalation_policy"), "escalation_policy"),
        description=decode_str(trigger_summary.get("description"), "trigger_summary_data.description"),
        last_status_change_on=decode_timestamp(api_incident.get("last_status_change_on"), "last_status_change_on"),
        resolved_by=decode_resolver(api_incident.get("resolved_by_user")),
        acknowledgers=[
            parse_acknowledger(api_acknowledger, f"acknowledgers[{i}]")
            for i, api_acknowledger in enumerate(decode_list(api_incident.get("acknowledgers"), "acknowledgers"))
        ],
        raw_data=api_incident,
    )
    logging.debug("parse_incident()=%s", incident)
    return incident


def parse_page(value: typing.Any) -> Page:
    api_response = decode_object(value, "response")
    api_incidents = decode_list(api_response.get("incidents"), "incidents")
    return Page(
        incidents=[parse_incident(api_incident) for api_incident in api_incidents],
        limit=decode_int(api_response.get("limit"), "limit"),
        offset=decode_int(api_response.get("offset"), "offset"),
        total=decode_int(api_response.get("total"), "total"),
    )


# The date range covers whole days: since at 00:00:00, until at 23:59:59, both in time_zone.
def date_range_bounds(
    since: datetime.date,
    until: datetime.date,
    time_zone: str,
) -> tuple[datetime.datetime, datetime.datetime]:
    tzinfo = zoneinfo.ZoneInfo(time_zone)
    return (
        datetime.datetime.combine(since, datetime.time(0, 0, 0), tzinfo=tzinfo),
        datetime.datetime.combine(until, datetime.time(23, 59, 59), tzinfo=tzinfo),
    )


# Fetch a single page of incidents starting at offset.
# No retries: any failure is raised to the caller.
def call_pagerduty_incidents_page(
    session: requests.Session,
    api_token: str,
    endpoint: str,
    time_zone: str,
    since: datetime.date,
    until: datetime.date,
    offset: int,
) -> Page:
    url = f"https://{endpoint}/api/v1/incidents"
    since_date, until_date = date_range_bounds(since, until, time_zone)
    params = {
        "since": since_date.isoformat(),
        "until": until_date.isoformat(),
        "time_zone": time_zone,
        "offset": offset,
    }
    headers = {"Authorization": f"Token token={api_token}"}

    logging.info("call_pagerduty_incidents_page(url=%s, params=%s)", url, params)
    try:
        response: requests.Response = session.get(url, params=params, headers=headers)
    except requests.RequestException as e:
        msg = f"Request to {url} failed: {e}"
        raise FetchError(msg) from e

    if response.status_code != requests.codes.ok:
        msg = f"response.status_code is {response.status_code}, != 200"
        raise FetchError(msg)

    try:
        api_response = response.json()
    except requests.exceptions.JSONDecodeError as e:
        msg = f"Response from {url} is not valid JSON: {e}"
        raise DecodeError(msg) from e

    page = parse_page(api_response)
    logging.info("call_pagerduty_incidents_page(offset=%d)=%s", offset, page)
    return page


# Append incidents to their service group, keeping the order of arrival.
def group_by_service(groups: dict[str, list[Incident]], incidents: list[Incident]) -> None:
    for incident in incidents:
        groups.setdefault(incident.service.name, []).append(incident)


@dataclasses.dataclass(frozen=True)
class Args:
    log_level: str
    endpoint: str
    time_zone: str
    api_token: str
    since: datetime.date
    until: datetime.date


# Fetch all incidents in [since, until] page by page and group them by service name.
# Stops on the first empty page, then when everything fits in one page,
# then when the number of collected incidents reaches the reported total.
def collect_incidents(
    args: Args,
    session: requests.Session,
) -> dict[str, list[Incident]]:
    groups: dict[str, list[Incident]] = {}
    collected = 0
    offset = 0
    for call_count in itertools.count(1):
        logging.info("collect_incidents(call=%d, offset=%d)", call_count, offset)
        page = call_pagerduty_incidents_page(
            session,
            args.api_token,
            args.endpoint,
            args.time_zone,
            args.since,
            args.until,
            offset,
        )

        if not page.incidents:
            logging.info("No more incidents.")
            break

        group_by_service(groups, page.incidents)
        collected += len(page.incidents)

        if page.total <= page.limit:
            break
        if collected >= page.total:
            logging.info("Collected %d of %d incidents.", collected, page.total)
            break

        next_offset = page.limit if offset == 0 else page.offset + len(page.incidents)
        # Re-reading an offset would duplicate incidents in the groups.
        if next_offset <= offset:
            msg = f"Pagination does not advance: offset={offset}, next_offset={next_offset}, page={page}"
            raise DecodeError(msg)
        offset = next_offset

    return groups


# Summarize who or what closed, holds or left open the incident.
def incident_resolution(incident: Incident) -> str:
    if incident.status == "resolved":
        if incident.resolved_by is None:
            return "API"
        return f"resolved by: {incident.resolved_by}"
    if incident.status == "acknowledged":
        # Only the first acknowledger is reported.
        if not incident.acknowledgers:
            return "unknown"
        return str(incident.acknowledgers[0])
    if incident.status == "triggered":
        return "open"
    return incident.resolved_by or ""


def format_incident_line(service_name: str, incident: Incident) -> str:
    return ",".join(
        [
            service_name,
            str(incident.incident_number),
            incident.description,
            format_timestamp(incident.created_on),
            format_timestamp(incident.last_status_change_on),
            incident.status,
            incident_resolution(incident),
        ]
    )


def report_incidents(groups: dict[str, list[Incident]], stream: typing.TextIO) -> None:
    for service_name, incidents in groups.items():
        print(f"Category {service_name}: count: {len(incidents)}", file=stream)
        for incident in incidents:
            print(format_incident_line(service_name, incident), file=stream)


# https://stackoverflow.com/a/45392259
# usage: argument_parser.add_argument(..., **environ_or_required("ENV_VAR")))
def environ_or_required(key: str) -> dict[str, typing.Any]:
    value = os.environ.get(key)
    if value:
        return {"default": value}
    return {"required": True}


def build_arg_parser() -> argparse.ArgumentParser:
    arg_parser = argparse.ArgumentParser(
        description="pagerduty-ops-report", formatter_class=argparse.RawTextHelpFormatter
    )
    arg_parser.add_argument(
        "--log-level",
        metavar="LOG_LEVEL",
        dest="log_level",
        type=str,
        choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "NOTSET"],
        required=False,
        default="WARN",
        help="Set the verbosity level. Choose from: CRITICAL, ERROR, WARN, INFO, DEBUG, NOTSET.",
    )
    arg_parser.add_argument(
        "-endpoint",
        "--endpoint",
        metavar="HOST",
        dest="endpoint",
        type=extract_endpoint_host,
        required=True,
        help=(
            "PagerDuty endpoint for your organization.\n"
            "Value can be a host (e.g., acme.pagerduty.com) or\n"
            "a URL (e.g., https://acme.pagerduty.com/)."
        ),
    )
    arg_parser.add_argument(
        "-tz",
        "--tz",
        metavar="TIME_ZONE",
        dest="time_zone",
        type=parse_time_zone,
        required=True,
        help="tz database time zone, e.g., 'Asia/Singapore' or 'Singapore'.",
    )
    arg_parser.add_argument(
        "-token",
        "--token",
        metavar="API_TOKEN",
        dest="api_token",
        type=str,
        **environ_or_required("PAGERDUTY_TOKEN"),
        help="API token assigned by PagerDuty. Defaults to the PAGERDUTY_TOKEN environment variable.",
    )
    arg_parser.add_argument(
        "-since",
        "--since",
        metavar="DATE",
        dest="since",
        type=parse_day,
        required=True,
        help="First day of the range (inclusive, from 00:00:00), formatted as YYYY-MM-DD, e.g., '2016-04-27'.",
    )
    arg_parser.add_argument(
        "-until",
        "--until",
        metavar="DATE",
        dest="until",
        type=parse_day,
        required=True,
        help="Last day of the range (inclusive, until 23:59:59), formatted as YYYY-MM-DD, e.g., '2016-04-28'.",
    )
    arg_parser.add_argument("--version", action="version", version=("%(prog)s " + VERSION))
    return arg_parser


def main(argv: list[str] | None = None) -> int:
    arg_parser = build_arg_parser()
    args = Args(**vars(arg_parser.parse_args(argv)))
    if args.since > args.until:
        arg_parser.error(f"since ({args.since}) is after until ({args.until})")

    logging.basicConfig(stream=sys.stdout, level=args.log_level, format="%(levelname)s %(message)s")
    logging.info("log_level=%s", args.log_level)
    logging.info("endpoint=%s", args.endpoint)
    logging.info("time_zone=%s", args.time_zone)
    logging.info("api_token=%s...%s", args.api_token[:3], args.api_token[-3:])
    logging.info("since=%s", args.since)
    logging.info("until=%s", args.until)

    try:
        with requests.Session() as session:
            groups = collect_incidents(args, session)
    except ReportError as e:
        logging.error("Failed to collect incidents: %s", e)
        return 1

    logging.info("len(groups)=%d", len(groups))
    logging.info("incidents=%d", sum(len(incidents) for incidents in groups.values()))

    report_incidents(groups, sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
