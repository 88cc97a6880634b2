import gc
import gzip
import json
import os
import shutil
import tempfile
import threading
import unittest
import zipfile
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from glob import glob
from io import BytesIO

from sqlalchemy import select

import dmarcrollup
import dmarcrollup.cli
import dmarcrollup.utils
from dmarcrollup.mail import (
    AttachmentPart,
    BodyPart,
    MailboxConnection,
    MailboxError,
    get_report_attachments,
    iter_message_parts,
)
from dmarcrollup.storage import (
    AggregationStore,
    ReportNotFound,
    StorageError,
    _AggregateRecordRow,
)

GOOGLE_SAMPLE = "samples/aggregate/google.com!example.com!1609459200!1609545600.xml"
EXAMPLE_NET_SAMPLE = (
    "samples/aggregate/example.net!example.org!1609545600!1609632000.xml"
)
LEGACY_SAMPLE = "samples/aggregate/legacy-reporter.xml"


def read_sample(path):
    with open(path, "rb") as sample_file:
        return sample_file.read()


def gzip_bytes(content):
    return gzip.compress(content)


def zip_bytes(*entries):
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as _zip:
        for name, content in entries:
            _zip.writestr(name, content)
    return buffer.getvalue()


def mailbox_config(host, user="dmarc"):
    return {
        "host": host,
        "port": 993,
        "username": user,
        "password": "secret",
        "mailbox": "INBOX",
        "use_tls": True,
    }


class FakeMailboxConnection(MailboxConnection):
    def __init__(self, attachments=None, error=None):
        self.attachments = attachments or []
        self.error = error
        self.close_count = 0

    def fetch_unseen_attachments(self):
        if self.error is not None:
            raise self.error
        return list(self.attachments)

    def close(self):
        self.close_count += 1


class FakeConnectionFactory(object):
    """Returns a prepared connection, or raises, for each configured host"""

    def __init__(self, connections):
        self.connections = connections

    def __call__(self, config):
        connection = self.connections[config["host"]]
        if isinstance(connection, Exception):
            raise connection
        return connection


class BrokenStore(object):
    def save_report(self, feedback):
        raise StorageError("disk I/O error")


class Test(unittest.TestCase):
    def testIsDMARCAttachment(self):
        """Test the attachment filename heuristic"""
        self.assertTrue(dmarcrollup.utils.is_dmarc_attachment("report.xml"))
        self.assertTrue(dmarcrollup.utils.is_dmarc_attachment("REPORT.XML.GZ"))
        self.assertTrue(dmarcrollup.utils.is_dmarc_attachment("report.zip"))
        self.assertTrue(dmarcrollup.utils.is_dmarc_attachment("DMARC-report.bin"))
        self.assertFalse(dmarcrollup.utils.is_dmarc_attachment("logo.png"))
        self.assertFalse(dmarcrollup.utils.is_dmarc_attachment("report.xml.txt"))
        self.assertFalse(dmarcrollup.utils.is_dmarc_attachment(""))
        self.assertFalse(dmarcrollup.utils.is_dmarc_attachment(None))

    def testMailboxName(self):
        name = dmarcrollup.utils.get_mailbox_name(mailbox_config("imap.example.com"))
        self.assertEqual(name, "dmarc@imap.example.com:INBOX")


class TestExtractReport(unittest.TestCase):
    def setUp(self):
        self.xml = read_sample(GOOGLE_SAMPLE)

    def testPlain(self):
        """Test that uncompressed content is returned unchanged"""
        self.assertEqual(dmarcrollup.extract_report(self.xml), self.xml)
        self.assertEqual(dmarcrollup.extract_report(b""), b"")

    def testGzip(self):
        self.assertEqual(dmarcrollup.extract_report(gzip_bytes(self.xml)), self.xml)

    def testMultiMemberGzip(self):
        half = len(self.xml) // 2
        content = gzip_bytes(self.xml[:half]) + gzip_bytes(self.xml[half:])
        self.assertEqual(dmarcrollup.extract_report(content), self.xml)

    def testZip(self):
        content = zip_bytes(("report.xml", self.xml))
        self.assertEqual(dmarcrollup.extract_report(content), self.xml)

    def testZipOnlyReadsFirstEntry(self):
        """Test that only the first entry of a zip archive is extracted"""
        second = read_sample(EXAMPLE_NET_SAMPLE)
        content = zip_bytes(("first.xml", self.xml), ("second.xml", second))
        self.assertEqual(dmarcrollup.extract_report(content), self.xml)

    def testNestedContainers(self):
        content = zip_bytes(("report.xml.gz", gzip_bytes(self.xml)))
        self.assertEqual(dmarcrollup.extract_report(content), self.xml)

    def testCorruptGzipIsReturnedAsIs(self):
        content = gzip_bytes(self.xml)[:20]
        self.assertEqual(dmarcrollup.extract_report(content), content)
        with self.assertRaises(dmarcrollup.DecompressionFailed):
            dmarcrollup.parse_aggregate_report(content)

    def testCorruptZipIsReturnedAsIs(self):
        content = b"PK\x03\x04 this is not really a zip file"
        self.assertEqual(dmarcrollup.extract_report(content), content)

    def testEmptyZip(self):
        content = zip_bytes()
        self.assertEqual(dmarcrollup.extract_report(content), content)


class TestParseAggregateReport(unittest.TestCase):
    def testSamples(self):
        """Test sample aggregate DMARC reports"""
        sample_paths = glob("samples/aggregate/*")
        self.assertGreater(len(sample_paths), 0)
        for sample_path in sample_paths:
            print("Testing {0}: ".format(sample_path), end="")
            report = dmarcrollup.parse_aggregate_report_file(sample_path)
            self.assertGreater(len(report["report_metadata"]["report_id"]), 0)
            print("Passed!")

    def testInvalidSamples(self):
        """Test that invalid reports are rejected"""
        sample_paths = glob("samples/invalid/*")
        self.assertGreater(len(sample_paths), 0)
        for sample_path in sample_paths:
            print("Testing {0}: ".format(sample_path), end="")
            with self.assertRaises(dmarcrollup.InvalidAggregateReport):
                dmarcrollup.parse_aggregate_report_file(sample_path)
            print("Passed!")

    def testMissingFile(self):
        with self.assertRaises(dmarcrollup.ParserError):
            dmarcrollup.parse_aggregate_report_file("samples/does-not-exist.xml")

    def testEndToEnd(self):
        """Test the Google sample from parsing through the store"""
        report = dmarcrollup.parse_aggregate_report(
            gzip_bytes(read_sample(GOOGLE_SAMPLE))
        )
        metadata = report["report_metadata"]
        self.assertEqual(metadata["org_name"], "google.com")
        self.assertEqual(metadata["report_id"], "12345678901234567890")
        self.assertEqual(metadata["date_range"], {"begin": 1609459200, "end": 1609545600})
        self.assertEqual(report["policy_published"]["domain"], "example.com")
        self.assertEqual(report["policy_published"]["p"], "none")
        self.assertEqual(report["policy_published"]["pct"], 100)
        self.assertEqual(len(report["records"]), 1)
        row = report["records"][0]["row"]
        self.assertEqual(row["source_ip"], "192.0.2.1")
        self.assertEqual(row["count"], 100)
        self.assertEqual(row["policy_evaluated"]["dkim"], "pass")
        self.assertEqual(row["policy_evaluated"]["spf"], "pass")
        self.assertEqual(dmarcrollup.get_total_messages(report), 100)
        self.assertEqual(dmarcrollup.get_compliant_message_count(report), 100)

        tmpdir = tempfile.mkdtemp()
        try:
            with AggregationStore(os.path.join(tmpdir, "dmarc.db")) as store:
                self.assertTrue(store.save_report(report))
                reports = store.get_reports()
                self.assertEqual(len(reports), 1)
                self.assertEqual(reports[0]["report_id"], "12345678901234567890")
                self.assertEqual(reports[0]["compliance_rate"], 100.0)
                statistics = store.get_statistics()
                self.assertEqual(statistics["total_reports"], 1)
                self.assertEqual(statistics["unique_source_ips"], 1)
        finally:
            shutil.rmtree(tmpdir)

    def testMultipleRecords(self):
        report = dmarcrollup.parse_aggregate_report_file(EXAMPLE_NET_SAMPLE)
        self.assertEqual(report["version"], "draft")
        self.assertEqual(report["policy_published"]["domain"], "example.org")
        self.assertEqual(report["policy_published"]["p"], "quarantine")
        self.assertIsNone(report["policy_published"]["sp"])
        self.assertEqual(
            report["report_metadata"]["errors"], ["Some records were truncated"]
        )
        failed, forwarded = report["records"]
        self.assertEqual(failed["identifiers"]["header_from"], "example.org")
        self.assertEqual(failed["identifiers"]["envelope_from"], "bounce.example.biz")
        self.assertEqual(failed["auth_results"]["dkim"], [])
        self.assertEqual(failed["auth_results"]["spf"][0]["scope"], "mfrom")
        self.assertEqual(
            forwarded["row"]["policy_evaluated"]["reasons"],
            [{"type": "forwarded", "comment": "mailing list"}],
        )
        self.assertEqual(len(forwarded["auth_results"]["dkim"]), 2)
        self.assertEqual(dmarcrollup.get_total_messages(report), 10)
        self.assertEqual(dmarcrollup.get_compliant_message_count(report), 7)

    def testLegacyReporter(self):
        """Test a BOM, a bad XML header, and pre-release element names"""
        report = dmarcrollup.parse_aggregate_report_file(LEGACY_SAMPLE)
        metadata = report["report_metadata"]
        self.assertEqual(metadata["report_id"], "20210103.legacy@mail.example.info")
        self.assertEqual(metadata["org_name"], "mail.example.info")
        self.assertEqual(report["policy_published"]["p"], "reject")
        self.assertIsNone(report["policy_published"]["pct"])
        record = report["records"][0]
        self.assertEqual(record["row"]["policy_evaluated"]["disposition"], "none")
        self.assertEqual(record["identifiers"]["header_from"], "example.com")
        self.assertEqual(dmarcrollup.get_compliant_message_count(report), 2)

    def testNonNumericFieldsAreRejected(self):
        xml = read_sample(GOOGLE_SAMPLE).decode("utf-8")
        for old, new in (
            ("<count>100</count>", "<count>many</count>"),
            ("<begin>1609459200</begin>", "<begin>yesterday</begin>"),
            ("<end>1609545600</end>", "<end>1.5</end>"),
            ("<pct>100</pct>", "<pct>all</pct>"),
        ):
            with self.assertRaises(dmarcrollup.InvalidAggregateReport):
                dmarcrollup.parse_aggregate_report_xml(xml.replace(old, new))

    def testOutOfRangeFieldsAreRejected(self):
        xml = read_sample(GOOGLE_SAMPLE).decode("utf-8")
        for old, new in (
            ("<count>100</count>", "<count>0</count>"),
            ("<count>100</count>", "<count>-4</count>"),
            ("<pct>100</pct>", "<pct>150</pct>"),
            ("<p>none</p>", "<p>monitor</p>"),
            ("<begin>1609459200</begin>", "<begin>1609545601</begin>"),
        ):
            with self.assertRaises(dmarcrollup.InvalidAggregateReport):
                dmarcrollup.parse_aggregate_report_xml(xml.replace(old, new))

    def testMissingRequiredFields(self):
        xml = read_sample(GOOGLE_SAMPLE).decode("utf-8")
        for old, new in (
            ("<domain>example.com</domain>\n    <adkim>", "<adkim>"),
            ("<source_ip>192.0.2.1</source_ip>", ""),
            ("<p>none</p>", "<p></p>"),
        ):
            self.assertIn(old, xml)
            with self.assertRaises(dmarcrollup.InvalidAggregateReport):
                dmarcrollup.parse_aggregate_report_xml(xml.replace(old, new))

    def testEmptyReportID(self):
        xml = read_sample(GOOGLE_SAMPLE).decode("utf-8")
        xml = xml.replace(
            "<report_id>12345678901234567890</report_id>", "<report_id> </report_id>"
        )
        with self.assertRaises(dmarcrollup.InvalidAggregateReport):
            dmarcrollup.parse_aggregate_report_xml(xml)


class TestMessageParts(unittest.TestCase):
    def setUp(self):
        msg = MIMEMultipart()
        msg["Subject"] = "Report domain: example.com"
        msg.attach(MIMEText("This is a DMARC aggregate report", "plain"))
        report = MIMEApplication(gzip_bytes(read_sample(GOOGLE_SAMPLE)), "gzip")
        report.add_header(
            "Content-Disposition",
            "attachment",
            filename="google.com!example.com!1609459200!1609545600.xml.gz",
        )
        msg.attach(report)
        logo = MIMEApplication(b"\x89PNG\r\n\x1a\n", "octet-stream")
        logo.add_header("Content-Disposition", "attachment", filename="logo.png")
        msg.attach(logo)
        self.message = msg.as_bytes()

    def testIterMessageParts(self):
        parts = list(iter_message_parts(self.message))
        self.assertEqual(len(parts), 3)
        self.assertIsInstance(parts[0], BodyPart)
        self.assertEqual(parts[0].content_type, "text/plain")
        self.assertIsInstance(parts[1], AttachmentPart)
        self.assertEqual(parts[1].content_type, "application/gzip")
        self.assertIsInstance(parts[2], AttachmentPart)
        self.assertEqual(parts[2].filename, "logo.png")

    def testGetReportAttachments(self):
        attachments = get_report_attachments(self.message)
        self.assertEqual(len(attachments), 1)
        self.assertEqual(
            attachments[0]["filename"],
            "google.com!example.com!1609459200!1609545600.xml.gz",
        )
        report = dmarcrollup.parse_aggregate_report(attachments[0]["payload"])
        self.assertEqual(report["report_metadata"]["report_id"], "12345678901234567890")

    def testMessageWithoutAttachments(self):
        message = MIMEText("Out of office", "plain").as_string()
        self.assertEqual(get_report_attachments(message), [])


class TestAggregationStore(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = AggregationStore(os.path.join(self.tmpdir, "dmarc.db"))
        self.google = dmarcrollup.parse_aggregate_report_file(GOOGLE_SAMPLE)
        self.example_net = dmarcrollup.parse_aggregate_report_file(EXAMPLE_NET_SAMPLE)
        self.legacy = dmarcrollup.parse_aggregate_report_file(LEGACY_SAMPLE)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def saveAll(self):
        for report in (self.google, self.example_net, self.legacy):
            self.assertTrue(self.store.save_report(report))

    def testEmptyStore(self):
        statistics = self.store.get_statistics()
        self.assertEqual(statistics["total_reports"], 0)
        self.assertEqual(statistics["total_messages"], 0)
        self.assertEqual(statistics["compliance_rate"], 0.0)
        self.assertEqual(self.store.get_reports(), [])
        self.assertEqual(self.store.get_top_source_ips(), [])

    def testSaveIsIdempotent(self):
        self.assertTrue(self.store.save_report(self.google))
        self.assertFalse(self.store.save_report(self.google))
        with AggregationStore(os.path.join(self.tmpdir, "dmarc.db")) as other:
            self.assertFalse(other.save_report(self.google))
        self.assertEqual(self.store.get_statistics()["total_reports"], 1)
        self.assertEqual(self.store.get_statistics()["total_messages"], 100)
        self.assertEqual(
            self.store.get_top_source_ips(),
            [
                {
                    "source_ip": "192.0.2.1",
                    "count": 100,
                    "pass_count": 100,
                    "fail_count": 0,
                }
            ],
        )

    def testFirstWriteWins(self):
        """Test that a later report with a known ID does not replace the first"""
        self.store.save_report(self.google)
        changed = dmarcrollup.parse_aggregate_report_file(EXAMPLE_NET_SAMPLE)
        changed["report_metadata"]["report_id"] = "12345678901234567890"
        self.assertFalse(self.store.save_report(changed))
        self.assertEqual(self.store.get_report_by_id("12345678901234567890"), self.google)

    def assertSavedOnce(self, results):
        self.assertEqual(results.count(True), 1)
        self.assertEqual(results.count(False), len(results) - 1)
        self.assertEqual(self.store.get_statistics()["total_reports"], 1)
        self.assertEqual(self.store.get_statistics()["total_messages"], 100)
        top = self.store.get_top_source_ips()
        self.assertEqual(len(top), 1)
        self.assertEqual(top[0]["count"], 100)

    def runConcurrently(self, stores):
        barrier = threading.Barrier(len(stores))
        results = []
        results_lock = threading.Lock()

        def save(store):
            barrier.wait()
            saved = store.save_report(self.google)
            with results_lock:
                results.append(saved)

        threads = [threading.Thread(target=save, args=(s,)) for s in stores]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def testConcurrentDuplicateSaves(self):
        self.assertSavedOnce(self.runConcurrently([self.store] * 8))

    def testConcurrentDuplicateSavesAcrossStores(self):
        """Test concurrent saves from separate connections to one database"""
        path = os.path.join(self.tmpdir, "dmarc.db")
        stores = [AggregationStore(path) for _ in range(4)]
        try:
            self.assertSavedOnce(self.runConcurrently(stores))
        finally:
            for store in stores:
                store.close()

    def testReportWithoutRecords(self):
        self.google["records"] = []
        self.assertTrue(self.store.save_report(self.google))
        reports = self.store.get_reports()
        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0]["total_messages"], 0)
        self.assertEqual(reports[0]["compliance_rate"], 0.0)
        self.assertEqual(self.store.get_statistics()["compliance_rate"], 0.0)
        self.assertEqual(self.store.get_top_source_ips(), [])

    def testFailedSaveLeavesNothingBehind(self):
        """Test that a save failing on a record does not keep the report"""
        self.example_net["records"][1]["row"]["source_ip"] = None
        with self.assertRaises(StorageError):
            self.store.save_report(self.example_net)
        statistics = self.store.get_statistics()
        self.assertEqual(statistics["total_reports"], 0)
        self.assertEqual(statistics["unique_source_ips"], 0)
        with self.assertRaises(ReportNotFound):
            self.store.get_report_by_id("example.net-2021-01-02")

        self.legacy["records"][0]["row"]["count"] = 2**70
        with self.assertRaises(StorageError):
            self.store.save_report(self.legacy)
        self.assertEqual(self.store.get_statistics()["total_reports"], 0)

    def testSaveAfterFailedSave(self):
        self.google["records"][0]["row"]["source_ip"] = None
        with self.assertRaises(StorageError):
            self.store.save_report(self.google)
        self.google["records"][0]["row"]["source_ip"] = "192.0.2.1"
        self.assertTrue(self.store.save_report(self.google))

    def testRecordRows(self):
        """Test the flattened per-record rows kept beside each report"""
        self.store.save_report(self.example_net)
        columns = {c.name for c in _AggregateRecordRow.__table__.columns}
        self.assertIn("report_pk", columns)
        self.assertNotIn("report_id", columns)
        with self.store._session() as session:
            rows = (
                session.execute(
                    select(_AggregateRecordRow).order_by(_AggregateRecordRow.id)
                )
                .scalars()
                .all()
            )
            self.assertEqual(len(rows), 2)
            self.assertFalse(rows[0].passed_dmarc)
            self.assertTrue(rows[1].passed_dmarc)
            self.assertEqual(
                json.loads(rows[1].dkim_results),
                self.example_net["records"][1]["auth_results"]["dkim"],
            )
            self.assertEqual(
                json.loads(rows[0].spf_results),
                self.example_net["records"][0]["auth_results"]["spf"],
            )
            self.assertEqual(rows[0].report.report_id, "example.net-2021-01-02")

    def testRoundTrip(self):
        self.saveAll()
        for report in (self.google, self.example_net, self.legacy):
            report_id = report["report_metadata"]["report_id"]
            self.assertEqual(self.store.get_report_by_id(report_id), report)

    def testReportNotFound(self):
        with self.assertRaises(ReportNotFound):
            self.store.get_report_by_id("no-such-report")

    def testGetReportsOrdering(self):
        self.saveAll()
        reports = self.store.get_reports()
        self.assertEqual(
            [r["report_id"] for r in reports],
            [
                "20210103.legacy@mail.example.info",
                "example.net-2021-01-02",
                "12345678901234567890",
            ],
        )
        self.assertEqual(reports[1]["total_messages"], 10)
        self.assertEqual(reports[1]["compliant_messages"], 7)
        self.assertAlmostEqual(reports[1]["compliance_rate"], 70.0)
        self.assertEqual(reports[1]["policy_p"], "quarantine")
        self.assertEqual(len(self.store.get_reports(limit=1)), 1)
        self.assertEqual(
            self.store.get_reports(limit=1, offset=2)[0]["report_id"],
            "12345678901234567890",
        )

    def testComplianceRateBounds(self):
        self.saveAll()
        for report in self.store.get_reports():
            self.assertGreaterEqual(report["compliance_rate"], 0.0)
            self.assertLessEqual(report["compliance_rate"], 100.0)
        rate = self.store.get_statistics()["compliance_rate"]
        self.assertGreaterEqual(rate, 0.0)
        self.assertLessEqual(rate, 100.0)

    def testStatistics(self):
        self.saveAll()
        statistics = self.store.get_statistics()
        self.assertEqual(statistics["total_reports"], 3)
        self.assertEqual(statistics["total_messages"], 112)
        self.assertEqual(statistics["compliant_messages"], 109)
        self.assertAlmostEqual(statistics["compliance_rate"], 109 / 112 * 100)
        self.assertEqual(statistics["unique_source_ips"], 3)
        self.assertEqual(statistics["unique_domains"], 2)

    def testTopSourceIPs(self):
        self.saveAll()
        top = self.store.get_top_source_ips()
        self.assertEqual(
            [(s["source_ip"], s["count"]) for s in top],
            [("192.0.2.1", 107), ("198.51.100.7", 3), ("203.0.113.25", 2)],
        )
        for source in top:
            self.assertEqual(source["pass_count"] + source["fail_count"], source["count"])
        self.assertEqual(top[1]["fail_count"], 3)
        self.assertEqual(top[1]["pass_count"], 0)
        self.assertEqual(len(self.store.get_top_source_ips(limit=1)), 1)


class TestFetchAll(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.store = AggregationStore(os.path.join(self.tmpdir, "dmarc.db"))
        self.google = read_sample(GOOGLE_SAMPLE)
        self.example_net = read_sample(EXAMPLE_NET_SAMPLE)

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir)

    def testPartialFailure(self):
        """Test that one failed mailbox does not stop the others"""
        first = FakeMailboxConnection(
            [
                {"filename": "google.com.xml.gz", "payload": gzip_bytes(self.google)},
                {"filename": "broken.xml", "payload": b"<feedback><oops"},
                {"filename": "invite.ics", "payload": b"BEGIN:VCALENDAR"},
            ]
        )
        third = FakeMailboxConnection(
            [
                {
                    "filename": "example.net.zip",
                    "payload": zip_bytes(("report.xml", self.example_net)),
                },
                {"filename": "copy-of-google.xml", "payload": self.google},
            ]
        )
        factory = FakeConnectionFactory(
            {
                "imap1.example.com": first,
                "imap2.example.com": MailboxError("Connection refused"),
                "imap3.example.com": third,
            }
        )
        configs = [
            mailbox_config("imap1.example.com"),
            mailbox_config("imap2.example.com"),
            mailbox_config("imap3.example.com"),
        ]

        summary = dmarcrollup.fetch_all(
            configs, self.store, connection_factory=factory
        )

        self.assertEqual(summary["processed_count"], 3)
        self.assertEqual(summary["duplicate_count"], 1)
        self.assertEqual(len(summary["errors"]), 1)
        self.assertEqual(
            summary["errors"][0]["mailbox"], "dmarc@imap2.example.com:INBOX"
        )
        self.assertIn("Connection refused", summary["errors"][0]["error"])
        self.assertEqual(first.close_count, 1)
        self.assertEqual(third.close_count, 1)
        self.assertEqual(self.store.get_statistics()["total_reports"], 2)

    def testAllMailboxesFailed(self):
        factory = FakeConnectionFactory(
            {
                "imap1.example.com": MailboxError("Connection refused"),
                "imap2.example.com": FakeMailboxConnection(
                    error=MailboxError("SELECT failed")
                ),
            }
        )
        configs = [
            mailbox_config("imap1.example.com"),
            mailbox_config("imap2.example.com"),
        ]
        with self.assertRaises(dmarcrollup.AllMailboxesFailed) as context:
            dmarcrollup.fetch_all(configs, self.store, connection_factory=factory)
        summary = context.exception.summary
        self.assertEqual(len(summary["errors"]), 2)
        self.assertEqual(summary["processed_count"], 0)
        self.assertEqual(factory.connections["imap2.example.com"].close_count, 1)

    def testEmptyMailboxIsNotAnError(self):
        connection = FakeMailboxConnection()
        factory = FakeConnectionFactory({"imap1.example.com": connection})
        summary = dmarcrollup.fetch_all(
            [mailbox_config("imap1.example.com")],
            self.store,
            connection_factory=factory,
        )
        self.assertEqual(
            summary, {"processed_count": 0, "duplicate_count": 0, "errors": []}
        )
        self.assertEqual(connection.close_count, 1)

    def testRepeatedFetchIsIdempotent(self):
        def factory(config):
            return FakeMailboxConnection(
                [{"filename": "report.xml", "payload": self.google}]
            )

        configs = [mailbox_config("imap1.example.com")]
        first = dmarcrollup.fetch_all(configs, self.store, connection_factory=factory)
        second = dmarcrollup.fetch_all(configs, self.store, connection_factory=factory)
        with AggregationStore(os.path.join(self.tmpdir, "dmarc.db")) as reopened:
            third = dmarcrollup.fetch_all(
                configs, reopened, connection_factory=factory
            )
        self.assertEqual(first["duplicate_count"], 0)
        self.assertEqual(second["duplicate_count"], 1)
        self.assertEqual(self.store.get_statistics()["total_messages"], 100)
        self.assertEqual(third["duplicate_count"], 1)

    def testEachNewDatabaseReceivesReports(self):
        def factory(config):
            return FakeMailboxConnection(
                [{"filename": "report.xml", "payload": self.google}]
            )

        configs = [mailbox_config("imap1.example.com")]
        for i in range(20):
            store = AggregationStore(os.path.join(self.tmpdir, "{0}.db".format(i)))
            try:
                summary = dmarcrollup.fetch_all(
                    configs, store, connection_factory=factory
                )
                self.assertEqual(summary["duplicate_count"], 0)
                self.assertEqual(store.get_statistics()["total_reports"], 1)
            finally:
                store.close()
            del store
            gc.collect()

    def testStorageErrorsAreSkipped(self):
        connection = FakeMailboxConnection(
            [{"filename": "report.xml", "payload": self.google}]
        )
        factory = FakeConnectionFactory({"imap1.example.com": connection})
        summary = dmarcrollup.fetch_all(
            [mailbox_config("imap1.example.com")],
            BrokenStore(),
            connection_factory=factory,
        )
        self.assertEqual(summary["processed_count"], 0)
        self.assertEqual(summary["errors"], [])
        self.assertEqual(connection.close_count, 1)

    def testNoMailboxes(self):
        with self.assertRaises(ValueError):
            dmarcrollup.fetch_all([], self.store)


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.tmpdir, "dmarcrollup.ini")

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def writeConfig(self, content):
        with open(self.config_path, "w") as config_file:
            config_file.write(content)

    def testLoadConfig(self):
        self.writeConfig(
            "[general]\n"
            "database = sqlite:///reports.db\n"
            "fetch_interval = 60\n"
            "verbose = True\n"
            "\n"
            "[imap]\n"
            "host = imap.example.com\n"
            "user = dmarc@example.com\n"
            "password = secret\n"
            "\n"
            "[imap:backup]\n"
            "host = imap.example.net\n"
            "port = 143\n"
            "user = reports@example.net\n"
            "password = secret\n"
            "mailbox = DMARC\n"
            "ssl = False\n"
            "skip_certificate_verification = True\n"
        )
        opts = dmarcrollup.cli.load_config(self.config_path)
        self.assertEqual(opts.database, "sqlite:///reports.db")
        self.assertEqual(opts.fetch_interval, 60)
        self.assertTrue(opts.verbose)
        self.assertTrue(opts.silent)
        self.assertEqual(len(opts.mailboxes), 2)
        first, backup = opts.mailboxes
        self.assertEqual(first["port"], 993)
        self.assertEqual(first["mailbox"], "INBOX")
        self.assertTrue(first["use_tls"])
        self.assertTrue(first["verify"])
        self.assertEqual(first["timeout"], 30)
        self.assertEqual(backup["port"], 143)
        self.assertEqual(backup["mailbox"], "DMARC")
        self.assertFalse(backup["use_tls"])
        self.assertFalse(backup["verify"])

    def testMissingSetting(self):
        self.writeConfig("[imap]\nhost = imap.example.com\nuser = dmarc\n")
        with self.assertRaises(dmarcrollup.cli.ConfigurationError):
            dmarcrollup.cli.load_config(self.config_path)

    def testInvalidValue(self):
        self.writeConfig("[general]\nfetch_interval = often\n")
        with self.assertRaises(dmarcrollup.cli.ConfigurationError):
            dmarcrollup.cli.load_config(self.config_path)

    def testMissingFile(self):
        with self.assertRaises(dmarcrollup.cli.ConfigurationError):
            dmarcrollup.cli.load_config(self.config_path)

    def testGenConfig(self):
        dmarcrollup.cli.gen_config(self.config_path)
        opts = dmarcrollup.cli.load_config(self.config_path)
        self.assertEqual(opts.database, "dmarc.db")
        self.assertEqual(opts.fetch_interval, 300)
        self.assertEqual(len(opts.mailboxes), 1)
        with self.assertRaises(FileExistsError):
            dmarcrollup.cli.gen_config(self.config_path)

    def testSaveOutput(self):
        report = dmarcrollup.parse_aggregate_report_file(GOOGLE_SAMPLE)
        output_directory = os.path.join(self.tmpdir, "output")
        dmarcrollup.cli.save_output([report], output_directory=output_directory)
        self.assertTrue(
            os.path.exists(os.path.join(output_directory, "aggregate.json"))
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
