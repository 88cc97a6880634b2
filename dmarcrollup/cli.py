#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for collecting and summarizing DMARC aggregate reports"""

from argparse import Namespace, ArgumentParser
import os
from configparser import ConfigParser
from glob import glob
import logging
import json
import sys
import time
from tqdm import tqdm

from dmarcrollup import (
    fetch_all,
    parse_aggregate_report_file,
    ParserError,
    AllMailboxesFailed,
    __version__,
)
from dmarcrollup.constants import (
    DEFAULT_DATABASE,
    DEFAULT_FETCH_INTERVAL,
    DEFAULT_IMAP_MAILBOX,
    DEFAULT_IMAP_PORT,
    DEFAULT_IMAP_TIMEOUT,
)
from dmarcrollup.log import logger
from dmarcrollup.storage import AggregationStore, StorageError
from dmarcrollup.utils import get_mailbox_name

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)

SAMPLE_CONFIG = """\
[general]
database = {database}
fetch_interval = {fetch_interval}
# verbose = True
# log_file = dmarcrollup.log

# One [imap] section, and any number of [imap:<name>] sections
[imap]
host = imap.example.com
port = {port}
user = dmarc@example.com
password = changeme
mailbox = {mailbox}
ssl = True

# [imap:backup]
# host = imap.example.net
# user = reports@example.net
# password = changeme
# mailbox = DMARC
""".format(
    database=DEFAULT_DATABASE,
    fetch_interval=DEFAULT_FETCH_INTERVAL,
    port=DEFAULT_IMAP_PORT,
    mailbox=DEFAULT_IMAP_MAILBOX,
)


class ConfigurationError(ValueError):
    """Raised when a configuration file is invalid"""


def _mailbox_config(section):
    """Converts an ``[imap]`` config section into a ``MailboxConfig``"""
    for key in ("host", "user", "password"):
        if key not in section or section[key].strip() == "":
            raise ConfigurationError(
                "{0} setting missing from the [{1}] config section".format(
                    key, section.name
                )
            )
    verify = True
    if "skip_certificate_verification" in section:
        verify = not section.getboolean("skip_certificate_verification")
    return {
        "host": section["host"],
        "port": section.getint("port", fallback=DEFAULT_IMAP_PORT),
        "username": section["user"],
        "password": section["password"],
        "mailbox": section.get("mailbox", fallback=DEFAULT_IMAP_MAILBOX),
        "use_tls": section.getboolean("ssl", fallback=True),
        "verify": verify,
        "timeout": section.getint("timeout", fallback=DEFAULT_IMAP_TIMEOUT),
    }


def load_config(config_file):
    """
    Loads settings and mailbox configurations from an INI file

    Args:
        config_file (str): The path to the configuration file

    Returns:
        Namespace: ``database``, ``fetch_interval``, ``silent``,
        ``warnings``, ``verbose``, ``debug``, ``log_file``, and
        ``mailboxes``, a list of ``MailboxConfig`` dicts

    Raises:
        ConfigurationError
    """
    abs_path = os.path.abspath(config_file)
    if not os.path.exists(abs_path):
        raise ConfigurationError("A file does not exist at {0}".format(abs_path))
    opts = Namespace(
        database=DEFAULT_DATABASE,
        fetch_interval=DEFAULT_FETCH_INTERVAL,
        silent=True,
        warnings=False,
        verbose=False,
        debug=False,
        log_file=None,
        mailboxes=[],
    )
    config = ConfigParser()
    try:
        config.read(config_file)
        if "general" in config.sections():
            general_config = config["general"]
            if "database" in general_config:
                opts.database = general_config["database"]
            if "fetch_interval" in general_config:
                opts.fetch_interval = general_config.getint("fetch_interval")
            if "silent" in general_config:
                opts.silent = general_config.getboolean("silent")
            if "warnings" in general_config:
                opts.warnings = general_config.getboolean("warnings")
            if "verbose" in general_config:
                opts.verbose = general_config.getboolean("verbose")
            if "debug" in general_config:
                opts.debug = general_config.getboolean("debug")
            if "log_file" in general_config:
                opts.log_file = general_config["log_file"]
        for section_name in config.sections():
            if section_name == "imap" or section_name.startswith("imap:"):
                opts.mailboxes.append(_mailbox_config(config[section_name]))
    except ValueError as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError("Invalid configuration: {0}".format(e))
    if opts.fetch_interval < 1:
        raise ConfigurationError("fetch_interval must be at least 1 second")
    return opts


def gen_config(path):
    """Writes a sample configuration file to the given path"""
    if os.path.exists(path):
        raise FileExistsError("{0} already exists".format(path))
    with open(path, "w", encoding="utf-8") as config_file:
        config_file.write(SAMPLE_CONFIG)


def save_output(reports, output_directory="output", filename="aggregate.json"):
    """
    Saves parsed aggregate reports to a JSON file in the given directory

    Args:
        reports (list): Parsed aggregate reports
        output_directory (str): The path to the directory to save in
        filename (str): The filename of the JSON file
    """
    if os.path.exists(output_directory):
        if not os.path.isdir(output_directory):
            raise ValueError("{0} is not a directory".format(output_directory))
    else:
        os.makedirs(output_directory)

    with open(
        os.path.join(output_directory, filename), "w", newline="\n", encoding="utf-8"
    ) as agg_json:
        agg_json.write(json.dumps(reports, ensure_ascii=False, indent=2))


def _main():
    """Called when the module is executed"""

    def print_json(obj):
        print(json.dumps(obj, ensure_ascii=False, indent=2))

    def print_rollups(store):
        try:
            if opts.stats:
                print_json(store.get_statistics())
            if opts.top_sources:
                print_json(store.get_top_source_ips(limit=opts.top_sources))
            if opts.reports:
                print_json(store.get_reports(limit=opts.reports))
        except StorageError as error:
            logger.error("{0}".format(error.__str__()))

    def fetch(store):
        summary = fetch_all(opts.mailboxes, store)
        logger.info(
            "Fetched {0} report(s), {1} duplicate(s), {2} error(s)".format(
                summary["processed_count"],
                summary["duplicate_count"],
                len(summary["errors"]),
            )
        )
        return summary

    arg_parser = ArgumentParser(description="Collects DMARC aggregate reports")
    arg_parser.add_argument(
        "-c",
        "--config-file",
        help="a path to a configuration file (--silent implied)",
    )
    arg_parser.add_argument(
        "file_path",
        nargs="*",
        help="one or more paths to aggregate report files to save",
    )
    arg_parser.add_argument(
        "--fetch-once",
        action="store_true",
        help="fetch reports from the configured mailboxes once, then exit",
    )
    arg_parser.add_argument(
        "--gen-config", metavar="PATH", help="write a sample configuration file"
    )
    arg_parser.add_argument(
        "--database",
        help="a SQLAlchemy database URL or a path to a SQLite database "
        "(default: {0})".format(DEFAULT_DATABASE),
    )
    arg_parser.add_argument(
        "--stats", action="store_true", help="print overall statistics"
    )
    arg_parser.add_argument(
        "--top-sources",
        metavar="N",
        type=int,
        help="print the N source IPs that sent the most messages",
    )
    arg_parser.add_argument(
        "--reports", metavar="N", type=int, help="print the N most recent reports"
    )
    arg_parser.add_argument(
        "-o", "--output", help="write parsed reports to the given directory"
    )
    arg_parser.add_argument(
        "-s", "--silent", action="store_true", help="only print errors"
    )
    arg_parser.add_argument(
        "-w",
        "--warnings",
        action="store_true",
        help="print warnings in addition to errors",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="more verbose output"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)

    args = arg_parser.parse_args()

    if args.gen_config:
        try:
            gen_config(args.gen_config)
        except (FileExistsError, OSError) as error:
            logger.error("{0}".format(error.__str__()))
            exit(1)
        print("Sample configuration written to {0}".format(args.gen_config))
        return

    opts = Namespace(
        file_path=args.file_path,
        database=DEFAULT_DATABASE,
        fetch_interval=DEFAULT_FETCH_INTERVAL,
        fetch_once=args.fetch_once,
        stats=args.stats,
        top_sources=args.top_sources,
        reports=args.reports,
        output=args.output,
        silent=args.silent,
        warnings=args.warnings,
        verbose=args.verbose,
        debug=args.debug,
        log_file=args.log_file,
        mailboxes=[],
    )

    if args.config_file:
        try:
            config_opts = load_config(args.config_file)
        except ConfigurationError as error:
            logger.error("{0}".format(error.__str__()))
            exit(1)
        opts.database = config_opts.database
        opts.fetch_interval = config_opts.fetch_interval
        opts.mailboxes = config_opts.mailboxes
        opts.silent = opts.silent or config_opts.silent
        opts.warnings = opts.warnings or config_opts.warnings
        opts.verbose = opts.verbose or config_opts.verbose
        opts.debug = opts.debug or config_opts.debug
        if opts.log_file is None:
            opts.log_file = config_opts.log_file
    if args.database:
        opts.database = args.database

    logger.setLevel(logging.ERROR)

    if opts.warnings:
        logger.setLevel(logging.WARNING)
    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except Exception as error:
            logger.warning("Unable to write to log file: {}".format(error))

    if (
        len(opts.mailboxes) == 0
        and len(opts.file_path) == 0
        and not (opts.stats or opts.top_sources or opts.reports)
    ):
        logger.error("You must supply input files or a mailbox configuration")
        exit(1)

    logger.info("Starting dmarcrollup")

    try:
        store = AggregationStore(opts.database)
    except StorageError as error:
        logger.error("{0}".format(error.__str__()))
        exit(1)

    with store:
        file_paths = []
        for file_path in opts.file_path:
            file_paths += glob(file_path)
        file_paths = sorted(set(file_paths))

        aggregate_reports = []
        pbar = None
        if len(file_paths) > 0 and sys.stdout.isatty():
            pbar = tqdm(total=len(file_paths))
        for file_path in file_paths:
            try:
                report = parse_aggregate_report_file(file_path)
            except ParserError as error:
                logger.error("Failed to parse {0} - {1}".format(file_path, error))
            else:
                aggregate_reports.append(report)
                try:
                    if not store.save_report(report):
                        logger.warning(
                            "Skipping duplicate aggregate report with ID: "
                            "{0}".format(report["report_metadata"]["report_id"])
                        )
                except StorageError as error:
                    logger.error("Failed to save {0} - {1}".format(file_path, error))
            if pbar is not None:
                pbar.update(1)
        if pbar is not None:
            pbar.close()

        if len(file_paths) > 0:
            if not opts.silent:
                print_json(aggregate_reports)
            if opts.output:
                try:
                    save_output(aggregate_reports, output_directory=opts.output)
                except (ValueError, OSError) as error:
                    logger.error("Failed to save output - {0}".format(error))
                    exit(1)

        if len(opts.mailboxes) == 0:
            print_rollups(store)
            return

        for mailbox in opts.mailboxes:
            logger.debug("Configured mailbox {0}".format(get_mailbox_name(mailbox)))

        if opts.fetch_once:
            try:
                fetch(store)
            except AllMailboxesFailed as error:
                logger.error("{0}".format(error.__str__()))
                exit(1)
            print_rollups(store)
            return

        logger.info(
            "Fetching reports every {0} seconds - Quit with ctrl-c".format(
                opts.fetch_interval
            )
        )
        try:
            while True:
                try:
                    fetch(store)
                except AllMailboxesFailed as error:
                    logger.error("{0}".format(error.__str__()))
                print_rollups(store)
                time.sleep(opts.fetch_interval)
        except KeyboardInterrupt:
            logger.info("Stopping")


if __name__ == "__main__":
    _main()
