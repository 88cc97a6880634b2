# -*- coding: utf-8 -*-

"""A Python package for collecting and aggregating DMARC reports"""

from __future__ import annotations

import gzip
import re
import xml.parsers.expat as expat
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import xmltodict

from dmarcrollup.constants import MAX_CONTAINER_DEPTH, __version__
from dmarcrollup.log import logger
from dmarcrollup.mail import IMAPConnection, MailboxConnection
from dmarcrollup.types import (
    AuthResultDKIM,
    AuthResultSPF,
    Feedback,
    FetchError,
    FetchSummary,
    MailboxConfig,
    MailboxResult,
    PolicyOverrideReason,
    Record,
)
from dmarcrollup.utils import get_mailbox_name, is_dmarc_attachment

logger.debug("dmarcrollup v{0}".format(__version__))

xml_header_regex = re.compile(r"^<\?xml .*?>", re.MULTILINE)

MAGIC_GZIP = b"\x1f\x8b"

POLICIES = ("none", "quarantine", "reject")


class ParserError(RuntimeError):
    """Raised whenever the parser fails for some reason"""


class DecompressionFailed(ParserError):
    """Raised when a compressed report cannot be decompressed"""


class InvalidAggregateReport(ParserError):
    """Raised when an invalid DMARC aggregate report is encountered"""


class AllMailboxesFailed(RuntimeError):
    """Raised when every configured mailbox failed during a fetch"""

    def __init__(self, summary: FetchSummary):
        self.summary = summary
        super().__init__(
            "All {0} mailbox fetches failed".format(len(summary["errors"]))
        )


def _gunzip(content: bytes) -> bytes:
    try:
        return gzip.decompress(content)
    except (OSError, EOFError, zlib.error) as e:
        raise DecompressionFailed("Invalid gzip stream: {0}".format(e))


def _unzip_first_entry(content: bytes) -> Optional[bytes]:
    try:
        with zipfile.ZipFile(BytesIO(content)) as _zip:
            names = _zip.namelist()
            if len(names) == 0:
                return None
            if len(names) > 1:
                logger.debug(
                    "Zip archive has {0} entries, only reading {1}".format(
                        len(names), names[0]
                    )
                )
            return _zip.read(names[0])
    except (zipfile.BadZipFile, OSError, EOFError, zlib.error):
        return None
    except RuntimeError:
        # Unsupported compression method or an encrypted entry
        return None


def _decompress(content: bytes) -> bytes:
    for _ in range(MAX_CONTAINER_DEPTH):
        if content[: len(MAGIC_GZIP)] == MAGIC_GZIP:
            content = _gunzip(content)
            continue
        unzipped = _unzip_first_entry(content)
        if unzipped is None:
            break
        content = unzipped
    return content


def extract_report(content: bytes) -> bytes:
    """
    Extracts a report from a gzip or zip container, if it is in one

    Gzip is tried first, then zip. Only the first entry of a zip archive is
    read. Containers nested inside each other are unwrapped as well. Content
    that is not a recognized container, or that fails to decompress, is
    returned unchanged.

    Args:
        content (bytes): The raw attachment payload

    Returns:
        bytes: The decompressed content
    """
    try:
        return _decompress(bytes(content))
    except DecompressionFailed as e:
        logger.debug("Returning content as-is: {0}".format(e))
        return bytes(content)


def _text(value: Any) -> Optional[str]:
    """Returns the text of an xmltodict node, or None when it is empty"""
    if isinstance(value, dict):
        value = value.get("#text")
    if value is None:
        return None
    value = str(value).strip()
    if value == "":
        return None
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_dict(value: Any, section: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, list):
        value = value[0]
    if not isinstance(value, dict):
        raise InvalidAggregateReport("Report section {0} is invalid".format(section))
    return value


def _required(section: Dict[str, Any], key: str) -> str:
    value = _text(section.get(key))
    if value is None:
        raise InvalidAggregateReport("Missing field: {0}".format(key))
    return value


def _parse_int(value: Any, field: str) -> Optional[int]:
    text = _text(value)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        raise InvalidAggregateReport(
            "Field {0} is not an integer: {1}".format(field, text)
        )


def _parse_report_record(record: Dict[str, Any]) -> Record:
    """
    Converts a record from a DMARC aggregate report into a consistent format

    Args:
        record (dict): The record as parsed by xmltodict

    Returns:
        dict: The converted record
    """
    row = _as_dict(record.get("row"), "row")
    source_ip = _required(row, "source_ip")
    count = _parse_int(row.get("count"), "count")
    if count is None or count < 1:
        raise InvalidAggregateReport(
            "Record for {0} has an invalid count: {1}".format(source_ip, count)
        )

    policy_evaluated = _as_dict(row.get("policy_evaluated"), "policy_evaluated")
    disposition = _text(policy_evaluated.get("disposition")) or "none"
    if disposition.lower() == "pass":
        disposition = "none"
    reasons: List[PolicyOverrideReason] = []
    for reason in _as_list(policy_evaluated.get("reason")):
        reason = _as_dict(reason, "reason")
        reasons.append(
            {"type": _text(reason.get("type")), "comment": _text(reason.get("comment"))}
        )

    # Some reporters use the pre-release name for this section
    if "identities" in record:
        identifiers = _as_dict(record.get("identities"), "identities")
    else:
        identifiers = _as_dict(record.get("identifiers"), "identifiers")
    header_from = _text(identifiers.get("header_from")) or ""

    auth_results = _as_dict(record.get("auth_results"), "auth_results")
    dkim_results: List[AuthResultDKIM] = []
    for result in _as_list(auth_results.get("dkim")):
        result = _as_dict(result, "dkim")
        dkim_results.append(
            {
                "domain": _text(result.get("domain")) or "",
                "selector": _text(result.get("selector")),
                "result": _text(result.get("result")) or "none",
                "human_result": _text(result.get("human_result")),
            }
        )
    spf_results: List[AuthResultSPF] = []
    for result in _as_list(auth_results.get("spf")):
        result = _as_dict(result, "spf")
        spf_results.append(
            {
                "domain": _text(result.get("domain")) or "",
                "scope": _text(result.get("scope")),
                "result": _text(result.get("result")) or "none",
            }
        )

    return {
        "row": {
            "source_ip": source_ip,
            "count": count,
            "policy_evaluated": {
                "disposition": disposition,
                "dkim": _text(policy_evaluated.get("dkim")) or "fail",
                "spf": _text(policy_evaluated.get("spf")) or "fail",
                "reasons": reasons,
            },
        },
        "identifiers": {
            "envelope_to": _text(identifiers.get("envelope_to")),
            "envelope_from": _text(identifiers.get("envelope_from")),
            "header_from": header_from.lower(),
        },
        "auth_results": {"dkim": dkim_results, "spf": spf_results},
    }


def parse_aggregate_report_xml(xml: Union[str, bytes]) -> Feedback:
    """Parses a DMARC XML report string and returns a consistent dict

    Args:
        xml: A string of DMARC aggregate report XML

    Returns:
        dict: The parsed aggregate DMARC report

    Raises:
        InvalidAggregateReport
    """
    if isinstance(xml, bytes):
        xml = xml.decode("utf-8", errors="replace")

    # Replace XML header (sometimes they are invalid)
    xml = xml_header_regex.sub('<?xml version="1.0"?>', xml.lstrip("\ufeff \t\r\n"))

    try:
        document = xmltodict.parse(xml)
    except expat.ExpatError as error:
        raise InvalidAggregateReport("Invalid XML: {0}".format(error.__str__()))

    if not isinstance(document, dict) or "feedback" not in document:
        raise InvalidAggregateReport("Not a DMARC aggregate report")

    report = _as_dict(document["feedback"], "feedback")
    report_metadata = _as_dict(report.get("report_metadata"), "report_metadata")
    policy_published = _as_dict(report.get("policy_published"), "policy_published")

    report_id = _required(report_metadata, "report_id")
    report_id = report_id.replace("<", "").replace(">", "").strip()
    if report_id == "":
        raise InvalidAggregateReport("Missing field: report_id")

    email = _text(report_metadata.get("email")) or ""
    org_name = _text(report_metadata.get("org_name"))
    if org_name is None and "@" in email:
        org_name = email.split("@")[-1]

    date_range = _as_dict(report_metadata.get("date_range"), "date_range")
    begin = _parse_int(date_range.get("begin"), "begin") or 0
    end = _parse_int(date_range.get("end"), "end") or 0
    if begin > end:
        raise InvalidAggregateReport(
            "Date range begins after it ends: {0} > {1}".format(begin, end)
        )

    errors = [e for e in map(_text, _as_list(report_metadata.get("error"))) if e]

    domain = _required(policy_published, "domain")
    p = _required(policy_published, "p").lower()
    if p not in POLICIES:
        raise InvalidAggregateReport("Invalid policy: {0}".format(p))
    pct = _parse_int(policy_published.get("pct"), "pct")
    if pct is not None and not 0 <= pct <= 100:
        raise InvalidAggregateReport("Invalid pct: {0}".format(pct))
    sp = _text(policy_published.get("sp"))
    if sp is not None:
        sp = sp.lower()

    records = [
        _parse_report_record(_as_dict(record, "record"))
        for record in _as_list(report.get("record"))
    ]

    new_report: Feedback = {
        "version": _text(report.get("version")) or "draft",
        "report_metadata": {
            "org_name": org_name or "",
            "email": email,
            "extra_contact_info": _text(report_metadata.get("extra_contact_info")),
            "report_id": report_id,
            "date_range": {"begin": begin, "end": end},
            "errors": errors,
        },
        "policy_published": {
            "domain": domain.lower(),
            "adkim": _text(policy_published.get("adkim")),
            "aspf": _text(policy_published.get("aspf")),
            "p": p,
            "sp": sp,
            "pct": pct,
            "fo": _text(policy_published.get("fo")),
        },
        "records": records,
    }

    return new_report


def parse_aggregate_report(content: bytes) -> Feedback:
    """
    Parses an aggregate DMARC report attachment, compressed or not

    Args:
        content (bytes): The raw attachment payload

    Returns:
        dict: The parsed DMARC aggregate report

    Raises:
        DecompressionFailed: A gzip stream is corrupt or truncated
        InvalidAggregateReport: The content is not a valid aggregate report
    """
    return parse_aggregate_report_xml(_decompress(bytes(content)))


def parse_aggregate_report_file(file_path: str) -> Feedback:
    """Parses an aggregate DMARC report file at the given file_path"""
    try:
        with open(file_path, "rb") as report_file:
            content = report_file.read()
    except FileNotFoundError:
        raise ParserError("File was not found")
    return parse_aggregate_report(content)


def is_dmarc_aligned(record: Record) -> bool:
    """Returns ``True`` if DKIM or SPF passed alignment for a record"""
    policy_evaluated = record["row"]["policy_evaluated"]
    return (
        policy_evaluated["dkim"].lower() == "pass"
        or policy_evaluated["spf"].lower() == "pass"
    )


def get_total_messages(feedback: Feedback) -> int:
    """Returns the total number of messages covered by a report"""
    return sum(record["row"]["count"] for record in feedback["records"])


def get_compliant_message_count(feedback: Feedback) -> int:
    """Returns the number of messages in a report that passed DMARC"""
    return sum(
        record["row"]["count"]
        for record in feedback["records"]
        if is_dmarc_aligned(record)
    )


def _process_mailbox(
    config: MailboxConfig,
    store,
    connection_factory: Callable[[MailboxConfig], MailboxConnection],
    label: str,
) -> MailboxResult:
    mailbox_name = get_mailbox_name(config)
    result: MailboxResult = {
        "mailbox": mailbox_name,
        "processed": 0,
        "duplicates": 0,
        "error": None,
    }
    logger.info("{0} Connecting to {1}".format(label, mailbox_name))
    try:
        connection = connection_factory(config)
    except Exception as e:
        result["error"] = "Failed to connect to {0}: {1}".format(mailbox_name, e)
        return result

    with closing(connection):
        try:
            attachments = connection.fetch_unseen_attachments()
        except Exception as e:
            result["error"] = "Failed to fetch from {0}: {1}".format(mailbox_name, e)
            return result

        attachments = [a for a in attachments if is_dmarc_attachment(a["filename"])]
        if len(attachments) == 0:
            logger.info("{0} No new reports found in {1}".format(label, mailbox_name))
            return result
        logger.info(
            "{0} Processing {1} report(s) from {2}".format(
                label, len(attachments), mailbox_name
            )
        )

        for attachment in attachments:
            try:
                feedback = parse_aggregate_report(attachment["payload"])
            except ParserError as e:
                logger.warning(
                    "{0} Failed to parse {1}: {2}".format(
                        label, attachment["filename"], e
                    )
                )
                continue

            report_id = feedback["report_metadata"]["report_id"]
            try:
                saved = store.save_report(feedback)
            except Exception as e:
                logger.error(
                    "{0} Failed to save report {1}: {2}".format(label, report_id, e)
                )
                continue
            result["processed"] += 1
            if not saved:
                logger.debug(
                    "{0} Skipping duplicate aggregate report with ID: {1}".format(
                        label, report_id
                    )
                )
                result["duplicates"] += 1
                continue
            logger.info(
                "{0} Saved report: {1} from {2} (domain: {3}, messages: {4})".format(
                    label,
                    report_id,
                    feedback["report_metadata"]["org_name"],
                    feedback["policy_published"]["domain"],
                    get_total_messages(feedback),
                )
            )

    logger.info(
        "{0} Successfully processed {1} report(s) from {2}".format(
            label, result["processed"], mailbox_name
        )
    )
    return result


def fetch_all(
    mailbox_configs: Sequence[MailboxConfig],
    store,
    *,
    connection_factory: Optional[Callable[[MailboxConfig], MailboxConnection]] = None,
    max_workers: Optional[int] = None,
) -> FetchSummary:
    """
    Fetches, parses, and saves DMARC aggregate reports from several
    mailboxes at once

    Each mailbox is handled by its own worker. A mailbox that cannot be
    connected to or read is recorded in the summary's ``errors`` without
    affecting the others. Attachments that fail to parse or save are logged
    and skipped.

    Args:
        mailbox_configs: The mailboxes to fetch reports from
        store: An ``AggregationStore`` (or any object with ``save_report``)
        connection_factory: Connects to a mailbox given its configuration
            (``IMAPConnection.from_config`` by default)
        max_workers (int): The maximum number of concurrent workers
            (one per mailbox by default)

    Returns:
        dict: ``processed_count``, ``duplicate_count``, and ``errors``

    Raises:
        AllMailboxesFailed: Every mailbox failed
    """
    if len(mailbox_configs) == 0:
        raise ValueError("No mailbox configurations were supplied")
    if connection_factory is None:
        connection_factory = IMAPConnection.from_config
    if max_workers is None:
        max_workers = len(mailbox_configs)

    total = len(mailbox_configs)
    logger.info("Fetching DMARC reports from {0} inbox(es)".format(total))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(
                _process_mailbox,
                config,
                store,
                connection_factory,
                "[Inbox {0}/{1}]".format(i + 1, total),
            )
            for i, config in enumerate(mailbox_configs)
        ]
        results: List[MailboxResult] = []
        for config, future in zip(mailbox_configs, futures):
            try:
                results.append(future.result())
            except Exception as e:
                mailbox_name = get_mailbox_name(config)
                results.append(
                    {
                        "mailbox": mailbox_name,
                        "processed": 0,
                        "duplicates": 0,
                        "error": "Unexpected error in {0}: {1}".format(
                            mailbox_name, e
                        ),
                    }
                )

    errors: List[FetchError] = []
    summary: FetchSummary = {"processed_count": 0, "duplicate_count": 0, "errors": errors}
    for result in results:
        summary["processed_count"] += result["processed"]
        summary["duplicate_count"] += result["duplicates"]
        if result["error"] is not None:
            errors.append({"mailbox": result["mailbox"], "error": result["error"]})

    if len(errors) > 0:
        logger.warning("Completed with {0} error(s):".format(len(errors)))
        for error in errors:
            logger.warning("  - {0}".format(error["error"]))
    logger.info(
        "Successfully processed {0} total report(s) across all inboxes".format(
            summary["processed_count"]
        )
    )

    if len(errors) == total:
        raise AllMailboxesFailed(summary)

    return summary
