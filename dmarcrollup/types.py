from __future__ import annotations

from typing import List, Literal, Optional, TypedDict

# NOTE: This module is intentionally Python 3.9 compatible.
# - No PEP 604 unions (A | B)
# - No typing.NotRequired / Required (3.11+).
#   For optional keys, use total=False TypedDicts.


Policy = Literal["none", "quarantine", "reject"]


class DateRange(TypedDict):
    begin: int
    end: int


class ReportMetadata(TypedDict):
    org_name: str
    email: str
    extra_contact_info: Optional[str]
    report_id: str
    date_range: DateRange
    errors: List[str]


class PolicyPublished(TypedDict):
    domain: str
    adkim: Optional[str]
    aspf: Optional[str]
    p: Policy
    sp: Optional[str]
    pct: Optional[int]
    fo: Optional[str]


class PolicyOverrideReason(TypedDict):
    type: Optional[str]
    comment: Optional[str]


class PolicyEvaluated(TypedDict):
    disposition: str
    dkim: str
    spf: str
    reasons: List[PolicyOverrideReason]


class Row(TypedDict):
    source_ip: str
    count: int
    policy_evaluated: PolicyEvaluated


class Identifiers(TypedDict):
    envelope_to: Optional[str]
    envelope_from: Optional[str]
    header_from: str


class AuthResultDKIM(TypedDict):
    domain: str
    selector: Optional[str]
    result: str
    human_result: Optional[str]


class AuthResultSPF(TypedDict):
    domain: str
    scope: Optional[str]
    result: str


class AuthResults(TypedDict):
    dkim: List[AuthResultDKIM]
    spf: List[AuthResultSPF]


class Record(TypedDict):
    row: Row
    identifiers: Identifiers
    auth_results: AuthResults


class Feedback(TypedDict):
    version: str
    report_metadata: ReportMetadata
    policy_published: PolicyPublished
    records: List[Record]


class Attachment(TypedDict):
    filename: str
    payload: bytes


class _MailboxConfigRequired(TypedDict):
    host: str
    port: int
    username: str
    password: str
    mailbox: str
    use_tls: bool


class MailboxConfig(_MailboxConfigRequired, total=False):
    verify: bool
    timeout: int


class FetchError(TypedDict):
    mailbox: str
    error: str


class MailboxResult(TypedDict):
    mailbox: str
    processed: int
    duplicates: int
    error: Optional[str]


class FetchSummary(TypedDict):
    processed_count: int
    duplicate_count: int
    errors: List[FetchError]


class ReportSummary(TypedDict):
    id: int
    report_id: str
    org_name: str
    domain: str
    date_begin: int
    date_end: int
    total_messages: int
    compliant_messages: int
    compliance_rate: float
    policy_p: str


class Statistics(TypedDict):
    total_reports: int
    total_messages: int
    compliant_messages: int
    compliance_rate: float
    unique_source_ips: int
    unique_domains: int


class TopSourceIP(TypedDict):
    source_ip: str
    count: int
    pass_count: int
    fail_count: int
