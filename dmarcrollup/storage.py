# -*- coding: utf-8 -*-

"""Deduplicating storage and rollup queries for parsed aggregate reports"""

from __future__ import annotations

import json
import time
from typing import List, Optional

from expiringdict import ExpiringDict
from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from dmarcrollup import (
    get_compliant_message_count,
    get_total_messages,
    is_dmarc_aligned,
)
from dmarcrollup.constants import DEFAULT_DATABASE
from dmarcrollup.log import logger
from dmarcrollup.types import (
    Feedback,
    Record,
    ReportSummary,
    Statistics,
    TopSourceIP,
)

Base = declarative_base()


class StorageError(RuntimeError):
    """Raised when a database error occurs"""


class ReportNotFound(ValueError):
    """Raised when a report is not in the database"""


class _AggregateReportRow(Base):
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_id = Column(String, unique=True, nullable=False)
    org_name = Column(String, nullable=False)
    email = Column(String)
    domain = Column(String, nullable=False, index=True)
    date_begin = Column(Integer, nullable=False, index=True)
    date_end = Column(Integer, nullable=False)
    created_at = Column(Integer, nullable=False)
    policy_p = Column(String)
    policy_sp = Column(String)
    policy_pct = Column(Integer)
    total_messages = Column(Integer, nullable=False)
    compliant_messages = Column(Integer, nullable=False)
    raw_report = Column(Text, nullable=False)

    records = relationship(
        "_AggregateRecordRow", back_populates="report", cascade="all, delete-orphan"
    )


class _AggregateRecordRow(Base):
    __tablename__ = "records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_pk = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    source_ip = Column(String, nullable=False, index=True)
    count = Column(Integer, nullable=False)
    disposition = Column(String)
    dkim_result = Column(String)
    spf_result = Column(String)
    passed_dmarc = Column(Boolean, nullable=False)
    header_from = Column(String)
    envelope_from = Column(String)
    envelope_to = Column(String)
    dkim_results = Column(Text)
    spf_results = Column(Text)

    report = relationship("_AggregateReportRow", back_populates="records")


def _compliance_rate(compliant_messages: int, total_messages: int) -> float:
    if total_messages == 0:
        return 0.0
    return compliant_messages / total_messages * 100


def _record_row(record: Record) -> _AggregateRecordRow:
    policy_evaluated = record["row"]["policy_evaluated"]
    return _AggregateRecordRow(
        source_ip=record["row"]["source_ip"],
        count=record["row"]["count"],
        disposition=policy_evaluated["disposition"],
        dkim_result=policy_evaluated["dkim"],
        spf_result=policy_evaluated["spf"],
        passed_dmarc=is_dmarc_aligned(record),
        header_from=record["identifiers"]["header_from"],
        envelope_from=record["identifiers"]["envelope_from"],
        envelope_to=record["identifiers"]["envelope_to"],
        dkim_results=json.dumps(record["auth_results"]["dkim"]),
        spf_results=json.dumps(record["auth_results"]["spf"]),
    )


def _database_url(database: str) -> str:
    if "://" in database:
        return database
    return "sqlite:///{0}".format(database)


class AggregationStore(object):
    """
    A durable store of aggregate reports, keyed by report ID

    Args:
        database (str): A SQLAlchemy database URL, or a path to a SQLite
            database file
        timeout (float): Seconds to wait for a locked SQLite database

    The in-memory SQLite database (``sqlite://``) keeps a single shared
    connection, so it must only be used from one thread at a time.
    """

    def __init__(self, database: str = DEFAULT_DATABASE, timeout: float = 30.0):
        url = _database_url(database)
        self._is_sqlite = url.startswith("sqlite")
        engine_args = {}
        if self._is_sqlite:
            engine_args["connect_args"] = {
                "check_same_thread": False,
                "timeout": timeout,
            }
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
        try:
            self._engine = create_engine(url, **engine_args)
            if self._is_sqlite:
                self._use_immediate_transactions()
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError("Unable to open database {0}: {1}".format(url, e))
        self._session = sessionmaker(bind=self._engine)
        # Report IDs already saved to or found in this database
        self._seen_report_ids = ExpiringDict(max_len=100000, max_age_seconds=3600)
        logger.debug("Opened database {0}".format(url))

    def _use_immediate_transactions(self):
        # pysqlite defers BEGIN until the first write, which lets two
        # transactions read the same state before either takes the write
        # lock. Taking it up front serializes check-then-insert.
        @event.listens_for(self._engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self._engine, "begin")
        def _on_begin(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self):
        """Closes all database connections"""
        self._engine.dispose()

    def save_report(self, feedback: Feedback) -> bool:
        """
        Saves a parsed DMARC aggregate report, unless a report with the same
        ID has already been saved

        The report and all of its records are written in a single
        transaction. Message totals are calculated once, when the report is
        saved.

        Args:
            feedback (dict): A parsed aggregate report

        Returns:
            bool: ``True`` if the report was saved, ``False`` if it already
            existed

        Raises:
            StorageError
        """
        report_id = feedback["report_metadata"]["report_id"]
        if report_id in self._seen_report_ids:
            logger.debug(
                "Aggregate report ID {0} was already seen".format(report_id)
            )
            return False
        saved = self._insert_report(feedback)
        self._seen_report_ids[report_id] = True
        return saved

    def _insert_report(self, feedback: Feedback) -> bool:
        metadata = feedback["report_metadata"]
        policy_published = feedback["policy_published"]
        report_id = metadata["report_id"]
        try:
            with self._session() as session:
                with session.begin():
                    existing = session.execute(
                        select(_AggregateReportRow.id).where(
                            _AggregateReportRow.report_id == report_id
                        )
                    ).first()
                    if existing is not None:
                        logger.debug(
                            "Aggregate report ID {0} already exists".format(report_id)
                        )
                        return False
                    session.add(
                        _AggregateReportRow(
                            report_id=report_id,
                            org_name=metadata["org_name"],
                            email=metadata["email"],
                            domain=policy_published["domain"],
                            date_begin=metadata["date_range"]["begin"],
                            date_end=metadata["date_range"]["end"],
                            created_at=int(time.time()),
                            policy_p=policy_published["p"],
                            policy_sp=policy_published["sp"],
                            policy_pct=policy_published["pct"],
                            total_messages=get_total_messages(feedback),
                            compliant_messages=get_compliant_message_count(feedback),
                            raw_report=json.dumps(feedback),
                            records=[_record_row(r) for r in feedback["records"]],
                        )
                    )
        except IntegrityError as e:
            # Another writer saved the same report first
            if self._report_exists(report_id):
                logger.debug(
                    "Aggregate report ID {0} was saved concurrently".format(report_id)
                )
                return False
            raise StorageError(
                "Failed to save report {0}: {1}".format(report_id, e)
            )
        except (SQLAlchemyError, OverflowError) as e:
            raise StorageError("Failed to save report {0}: {1}".format(report_id, e))

        return True

    def _report_exists(self, report_id: str) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.execute(
                        select(_AggregateReportRow.id).where(
                            _AggregateReportRow.report_id == report_id
                        )
                    ).first()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to look up report {0}: {1}".format(report_id, e)
            )
        return row is not None

    def get_reports(self, limit: int = 50, offset: int = 0) -> List[ReportSummary]:
        """
        Returns summaries of saved reports, most recent first

        Args:
            limit (int): The maximum number of reports to return
            offset (int): The number of reports to skip

        Returns:
            list: Report summaries, including each report's compliance rate
        """
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")
        query = (
            select(
                _AggregateReportRow.id,
                _AggregateReportRow.report_id,
                _AggregateReportRow.org_name,
                _AggregateReportRow.domain,
                _AggregateReportRow.date_begin,
                _AggregateReportRow.date_end,
                _AggregateReportRow.total_messages,
                _AggregateReportRow.compliant_messages,
                _AggregateReportRow.policy_p,
            )
            .order_by(
                _AggregateReportRow.date_begin.desc(), _AggregateReportRow.id.desc()
            )
            .limit(limit)
            .offset(offset)
        )
        try:
            with self._session() as session:
                with session.begin():
                    rows = session.execute(query).all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to query reports: {0}".format(e))

        reports: List[ReportSummary] = []
        for row in rows:
            reports.append(
                {
                    "id": row.id,
                    "report_id": row.report_id,
                    "org_name": row.org_name,
                    "domain": row.domain,
                    "date_begin": row.date_begin,
                    "date_end": row.date_end,
                    "total_messages": row.total_messages,
                    "compliant_messages": row.compliant_messages,
                    "compliance_rate": _compliance_rate(
                        row.compliant_messages, row.total_messages
                    ),
                    "policy_p": row.policy_p,
                }
            )
        return reports

    def get_report_by_id(self, report_id: str) -> Feedback:
        """
        Returns a saved report exactly as it was parsed

        Args:
            report_id (str): The report ID from the report's metadata

        Raises:
            ReportNotFound
        """
        try:
            with self._session() as session:
                with session.begin():
                    raw_report: Optional[str] = session.execute(
                        select(_AggregateReportRow.raw_report).where(
                            _AggregateReportRow.report_id == report_id
                        )
                    ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError("Failed to query report {0}: {1}".format(report_id, e))
        if raw_report is None:
            raise ReportNotFound("Report ID {0} was not found".format(report_id))
        return json.loads(raw_report)

    def get_statistics(self) -> Statistics:
        """Returns totals across all saved reports"""
        try:
            with self._session() as session:
                with session.begin():
                    totals = session.execute(
                        select(
                            func.count(_AggregateReportRow.id),
                            func.coalesce(
                                func.sum(_AggregateReportRow.total_messages), 0
                            ),
                            func.coalesce(
                                func.sum(_AggregateReportRow.compliant_messages), 0
                            ),
                            func.count(_AggregateReportRow.domain.distinct()),
                        )
                    ).one()
                    unique_source_ips = session.execute(
                        select(func.count(_AggregateRecordRow.source_ip.distinct()))
                    ).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError("Failed to query statistics: {0}".format(e))

        total_reports, total_messages, compliant_messages, unique_domains = totals
        return {
            "total_reports": int(total_reports),
            "total_messages": int(total_messages),
            "compliant_messages": int(compliant_messages),
            "compliance_rate": _compliance_rate(
                int(compliant_messages), int(total_messages)
            ),
            "unique_source_ips": int(unique_source_ips),
            "unique_domains": int(unique_domains),
        }

    def get_top_source_ips(self, limit: int = 10) -> List[TopSourceIP]:
        """
        Returns the source IPs that sent the most messages

        Args:
            limit (int): The maximum number of source IPs to return

        Returns:
            list: ``source_ip``, ``count``, ``pass_count``, and
            ``fail_count`` for each source IP, by ``count`` descending
        """
        if limit < 0:
            raise ValueError("limit must not be negative")
        passed = _AggregateRecordRow.passed_dmarc.is_(True)
        total_count = func.sum(_AggregateRecordRow.count)
        query = (
            select(
                _AggregateRecordRow.source_ip,
                total_count,
                func.sum(case((passed, _AggregateRecordRow.count), else_=0)),
                func.sum(case((passed, 0), else_=_AggregateRecordRow.count)),
            )
            .group_by(_AggregateRecordRow.source_ip)
            .order_by(total_count.desc(), _AggregateRecordRow.source_ip)
            .limit(limit)
        )
        try:
            with self._session() as session:
                with session.begin():
                    rows = session.execute(query).all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to query top source IPs: {0}".format(e))

        return [
            {
                "source_ip": source_ip,
                "count": int(count),
                "pass_count": int(pass_count),
                "fail_count": int(fail_count),
            }
            for source_ip, count, pass_count, fail_count in rows
        ]
