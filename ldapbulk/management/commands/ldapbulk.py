import argparse
from pathlib import Path

import ldap
from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError, CommandParser

from ldapbulk.activity import ActivityLog
from ldapbulk.changefile import count_records
from ldapbulk.conf import get_server_config, get_setting, validate_settings
from ldapbulk.exceptions import ProtocolError, ValidationError
from ldapbulk.executor import RunEvent, RunOptions
from ldapbulk.jobs import BulkJob, LdifImportJob, MembershipJob, TemplateJob
from ldapbulk.models import BulkRunSummary, RunMode, ServerTarget
from ldapbulk.runner import BulkRunner
from ldapbulk.sources import CsvSource, RangeSource, SearchResultSource


def _read(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        msg = f"Cannot read {path}: {e}"
        raise CommandError(msg) from e


class Command(BaseCommand):
    """
    Run a bulk job from the command line.

    Examples::

        ./manage.py ldapbulk generate --server default --start 1 --end 100 \\
            --template user.ldif --mode generate --output users.ldif
        ./manage.py ldapbulk members --server default --group cn=staff,ou=groups,dc=example,dc=com \\
            --users uids.txt --operation add --continue-on-error
    """

    help = "Generate or apply bulk LDAP changes"

    def _common(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--server",
            action="append",
            required=True,
            dest="servers",
            help="Name of a server in settings.LDAP_SERVERS; repeat for several servers",
        )
        parser.add_argument(
            "--mode",
            choices=[mode.value for mode in RunMode],
            default=RunMode.EXECUTE.value,
        )
        parser.add_argument("--output", help="Where to write the generated change file")
        parser.add_argument(
            "--continue-on-error",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Keep going on a server after a subject fails (default: settings.LDAPBULK_CONTINUE_ON_ERROR)",
        )
        parser.add_argument("--permissive-modify", action="store_true")
        parser.add_argument("--no-operation", action="store_true")
        parser.add_argument("--quiet", action="store_true", help="Do not print progress")

    def add_arguments(self, parser: CommandParser) -> None:
        subparsers = parser.add_subparsers(dest="job", required=True)

        generate = subparsers.add_parser("generate", help="Expand a template for a range of numbers")
        generate.add_argument("--start", type=int, required=True)
        generate.add_argument("--end", type=int, required=True)
        generate.add_argument("--template", required=True, help="LDIF template file")
        self._common(generate)

        search = subparsers.add_parser("search", help="Expand a template for each search result")
        search.add_argument("--basedn", required=True)
        search.add_argument("--filter", required=True, dest="filterstr")
        search.add_argument("--template", required=True, help="LDIF template file")
        self._common(search)

        csv = subparsers.add_parser("csv", help="Expand a template for each CSV row")
        csv.add_argument("--csv", required=True, dest="csv_file", help="CSV file")
        csv.add_argument("--template", required=True, help="LDIF template file")
        csv.add_argument("--header", action="store_true", help="Skip the first row")
        csv.add_argument("--keep-quotes", action="store_true")
        csv.add_argument("--dn-method", choices=CsvSource.DN_METHODS, default="column")
        csv.add_argument("--search-filter", help="Filter template, e.g. (uid={C1})")
        csv.add_argument("--search-base")
        self._common(csv)

        ldif = subparsers.add_parser("ldif", help="Apply an LDIF change file")
        ldif.add_argument("--ldif", required=True, dest="ldif_file")
        self._common(ldif)

        members = subparsers.add_parser("members", help="Add users to or remove them from a group")
        members.add_argument("--group", required=True)
        members.add_argument("--users", required=True, help="File with one user id per line")
        members.add_argument("--operation", choices=MembershipJob.OPERATIONS, default="add")
        members.add_argument("--user-base-dn")
        self._common(members)

    def build_job(self, options: dict) -> BulkJob:
        job = options["job"]
        if job == "generate":
            return TemplateJob(
                RangeSource(options["start"], options["end"]), _read(options["template"])
            )
        if job == "search":
            return TemplateJob(
                SearchResultSource(options["basedn"], options["filterstr"]),
                _read(options["template"]),
            )
        if job == "csv":
            source = CsvSource(
                _read(options["csv_file"]),
                has_header=options["header"],
                strip_quotes=not options["keep_quotes"],
                dn_method=options["dn_method"],
                search_filter=options["search_filter"],
                search_base=options["search_base"],
            )
            return TemplateJob(source, _read(options["template"]))
        if job == "ldif":
            return LdifImportJob(_read(options["ldif_file"]))
        return MembershipJob(
            options["group"],
            _read(options["users"]),
            operation=options["operation"],
            user_base_dn=options["user_base_dn"],
        )

    def print_event(self, event: RunEvent) -> None:
        if event.result is None or event.result.success:
            return
        self.stderr.write(
            f"[{event.server}] {event.result.label}: {event.result.error_detail}"
        )

    def connect(self, names: list[str]) -> tuple[list[ServerTarget], list[str]]:
        """
        Connect to each named server.

        A server that cannot be reached is reported and left out; the others
        still run.

        Returns:
            The connected targets, and the names of the servers that failed.

        """
        targets: list[ServerTarget] = []
        failed: list[str] = []
        for name in names:
            try:
                targets.append(ServerTarget.from_settings(name))
            except ldap.LDAPError as e:
                error = ProtocolError.from_ldap_error(e)
                self.stderr.write(f"{name}: connection failed: {error}")
                failed.append(name)
            except ProtocolError as e:
                self.stderr.write(f"{name}: connection failed: {e}")
                failed.append(name)
        return targets, failed

    def handle(self, **options):
        try:
            validate_settings()
            for name in options["servers"]:
                get_server_config(name)
        except ImproperlyConfigured as e:
            raise CommandError(str(e)) from e
        job = self.build_job(options)
        targets, failed = self.connect(options["servers"])
        if not targets:
            msg = f"Could not connect to any server: {', '.join(failed)}"
            raise CommandError(msg)
        if isinstance(job, LdifImportJob) and not options["quiet"]:
            self.stdout.write(f"{count_records(job.source.text)} LDIF records to apply")
        continue_on_error = options["continue_on_error"]
        if continue_on_error is None:
            continue_on_error = get_setting("CONTINUE_ON_ERROR")
        run_options = RunOptions(
            mode=RunMode(options["mode"]),
            continue_on_error=continue_on_error,
            permissive_modify=options["permissive_modify"],
            no_operation=options["no_operation"],
        )
        outcome: dict[str, object] = {}

        def on_complete(summary: BulkRunSummary | None, error: BaseException | None) -> None:
            outcome["summary"] = summary
            outcome["error"] = error

        run = BulkRunner(activity=ActivityLog()).submit(
            job,
            targets,
            run_options,
            on_complete,
            on_event=None if options["quiet"] else self.print_event,
        )
        run.wait()

        error = outcome.get("error")
        if isinstance(error, ValidationError):
            raise CommandError(str(error))
        if error is not None:
            msg = f"Bulk run failed: {error}"
            raise CommandError(msg)
        summary: BulkRunSummary = outcome["summary"]  # type: ignore[assignment]
        for server in summary.servers:
            self.stdout.write(
                f"{server.name}: {server.state.value}, {server.success_count} successes, "
                f"{server.error_count} errors"
            )
        for name in failed:
            self.stdout.write(f"{name}: not connected")
        if summary.error_detail:
            self.stderr.write(summary.error_detail)
        if summary.change_file is not None:
            output = options["output"] or summary.file_name
            Path(output).write_text(summary.change_file, encoding="utf-8")
            self.stdout.write(f"Wrote {output}")
        if summary.error_count or failed:
            self.stdout.write(self.style.WARNING(summary.message()))
        else:
            self.stdout.write(self.style.SUCCESS(summary.message()))
