import unittest
from unittest.mock import Mock

import ldap

from ldapbulk.activity import ActivityLog, Category, Level
from ldapbulk.changefile import parse
from ldapbulk.client import NO_OPERATION_OID, PERMISSIVE_MODIFY_OID
from ldapbulk.exceptions import ProtocolError, ValidationError
from ldapbulk.executor import EventKind, MutationExecutor, RunOptions
from ldapbulk.jobs import LdifImportJob, MembershipJob, TemplateJob
from ldapbulk.membership import MembershipState
from ldapbulk.models import RunMode, RunState
from ldapbulk.sources import RangeSource, SearchResultSource

from .fakes import load_directory, make_target

USER_TEMPLATE = """dn: uid=user{COUNT},ou=people,dc=example,dc=com
changetype: add
objectClass: inetOrgPerson
uid: user{COUNT}
cn: User {COUNT}
sn: {COUNT}
"""

POSIX = "cn=posix,ou=groups,dc=example,dc=com"
NAMES = "cn=names,ou=groups,dc=example,dc=com"
UNIQUE = "cn=unique,ou=groups,dc=example,dc=com"
ENGINEERS = "cn=engineers,ou=groups,dc=example,dc=com"
JDOE_DN = "uid=jdoe,ou=people,dc=example,dc=com"
BJONES_DN = "uid=bjones,ou=people,dc=example,dc=com"


def user_dn(n):
    return f"uid=user{n},ou=people,dc=example,dc=com"


def range_job(start, end):
    return TemplateJob(RangeSource(start, end), USER_TEMPLATE)


def run(job, targets, **options):
    options.setdefault("continue_on_error", False)
    return MutationExecutor(job, targets, RunOptions(**options)).run()


class TestTemplateRuns(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()

    def test_range_adds_one_entry_per_count(self):
        summary = run(range_job(1, 100), [self.target])
        self.assertEqual(summary.state, RunState.COMPLETED)
        self.assertEqual(summary.success_count, 100)
        self.assertEqual(summary.error_count, 0)
        self.assertEqual(len(self.client.calls), 100)
        operation, dn, attributes, controls = self.client.calls[0]
        self.assertEqual((operation, dn, controls), ("add", user_dn(1), None))
        self.assertEqual(attributes["uid"], ["user1"])
        self.assertEqual(self.client.calls[-1][1], user_dn(100))
        self.assertEqual(
            summary.message(),
            "Bulk operation completed successfully. 100 entries processed across 1 server(s)",
        )

    def test_generate_matches_execute(self):
        generated = run(range_job(1, 20), [self.target], mode=RunMode.GENERATE)
        self.assertEqual(self.client.calls, [])
        self.assertEqual(generated.file_name, "bulk-generate.ldif")
        self.assertTrue(generated.change_file.startswith("# Server: ldap1\n# Entries: 20\n"))

        target, client = make_target()
        run(range_job(1, 20), [target])
        records = parse(generated.change_file)
        self.assertEqual(
            [(r.dn, r.attributes) for r in records],
            [(dn, attributes) for _, dn, attributes, _ in client.calls],
        )

    def test_generate_has_one_section_per_server(self):
        other, _ = make_target("ldap2")
        summary = run(range_job(1, 2), [self.target, other], mode=RunMode.GENERATE)
        self.assertIn("# Server: ldap1", summary.change_file)
        self.assertIn("# Server: ldap2", summary.change_file)
        self.assertEqual(summary.success_count, 4)
        self.assertEqual(len(parse(summary.change_file)), 4)

    def test_stop_at_first_failure(self):
        self.client.failures[user_dn(5)] = ProtocolError(50, "Insufficient access", dn=user_dn(5))
        summary = run(range_job(1, 10), [self.target])
        self.assertEqual(summary.state, RunState.ABORTED)
        server = summary.server("ldap1")
        self.assertEqual(server.state, RunState.ABORTED)
        self.assertEqual((server.success_count, server.error_count), (4, 1))
        self.assertEqual(len(self.client.calls), 4)

    def test_continue_on_error(self):
        self.client.failures[user_dn(5)] = ProtocolError(50, "Insufficient access", dn=user_dn(5))
        summary = run(range_job(1, 10), [self.target], continue_on_error=True)
        self.assertEqual(summary.state, RunState.COMPLETED)
        server = summary.server("ldap1")
        self.assertEqual((server.success_count, server.error_count), (9, 1))
        self.assertTrue(server.errors[0].startswith("#5: Insufficient access"))
        self.assertIn("Server 'ldap1': 9 successes, 1 errors", summary.error_detail)
        failed = [r for r in server.results if not r.success]
        self.assertEqual(failed[0].error_kind, "ProtocolError")

    def test_strict_placeholders(self):
        job = TemplateJob(RangeSource(1, 1), USER_TEMPLATE + "description: {MISSING}\n")
        summary = run(job, [self.target], strict_placeholders=True)
        self.assertEqual(summary.error_count, 1)
        self.assertEqual(summary.servers[0].results[0].error_kind, "TemplateError")
        self.assertEqual(self.client.calls, [])

    def test_leftover_placeholders_pass_through(self):
        job = TemplateJob(RangeSource(1, 1), USER_TEMPLATE + "description: {MISSING}\n")
        run(job, [self.target], strict_placeholders=False)
        self.assertEqual(self.client.calls[0][2]["description"], ["{MISSING}"])

    def test_search_results_are_modified(self):
        load_directory(self.client)
        job = TemplateJob(
            SearchResultSource("ou=people,dc=example,dc=com", "(objectClass=inetOrgPerson)"),
            "changetype: modify\nreplace: description\ndescription: {MAIL}\n-\n",
        )
        summary = run(job, [self.target])
        self.assertEqual(summary.success_count, 2)
        self.assertEqual([c[1] for c in self.client.calls], [JDOE_DN, BJONES_DN])
        self.assertEqual(self.client.get(JDOE_DN).values("description"), ["jdoe@example.com"])
        self.assertEqual(self.client.get(BJONES_DN).values("description"), ["{MAIL}"])


class TestValidation(unittest.TestCase):
    def test_no_targets(self):
        executor = MutationExecutor(range_job(1, 2), [], RunOptions(continue_on_error=False))
        with self.assertRaises(ValidationError):
            executor.run()
        self.assertEqual(executor.state, RunState.VALIDATING)

    def test_bad_input_touches_no_server(self):
        target, client = make_target()
        for job in (
            range_job(5, 1),
            TemplateJob(RangeSource(1, 2), "   "),
            MembershipJob(POSIX, ["jdoe"], operation="replace"),
        ):
            with self.subTest(job=job.describe()), self.assertRaises(ValidationError):
                run(job, [target])
        self.assertEqual(client.calls, [])
        self.assertEqual(client.searches, [])


class TestControls(unittest.TestCase):
    def test_unsupported_control_fails_the_subject(self):
        target, client = make_target()
        summary = run(range_job(1, 3), [target], no_operation=True)
        server = summary.server("ldap1")
        self.assertEqual(server.state, RunState.ABORTED)
        self.assertEqual(server.results[0].error_kind, "UnsupportedControl")
        self.assertIn("No-Op", server.errors[0])
        self.assertEqual(client.calls, [])

    def test_no_operation_is_sent_with_every_change(self):
        target, client = make_target(controls=[NO_OPERATION_OID])
        summary = run(range_job(1, 2), [target], no_operation=True)
        self.assertEqual(summary.success_count, 2)
        self.assertEqual([c[3] for c in client.calls], [[NO_OPERATION_OID], [NO_OPERATION_OID]])
        self.assertIsNone(client.get(user_dn(1)))

    def test_permissive_modify_only_for_modifies(self):
        target, client = make_target(controls=[PERMISSIVE_MODIFY_OID])
        load_directory(client)
        client.get(POSIX).attributes["memberUid"].append("jdoe")
        run(range_job(1, 1), [target], permissive_modify=True)
        self.assertEqual(client.calls[-1][3], None)
        summary = run(MembershipJob(POSIX, ["jdoe"]), [target], permissive_modify=True)
        self.assertEqual(summary.success_count, 1)
        self.assertEqual(client.calls[-1][3], [PERMISSIVE_MODIFY_OID])
        self.assertEqual(client.get(POSIX).values("memberUid"), ["jdoe"])

    def test_controls_are_not_negotiated_in_generate_mode(self):
        target, client = make_target()
        summary = run(range_job(1, 2), [target], mode=RunMode.GENERATE, no_operation=True)
        self.assertEqual(summary.success_count, 2)
        self.assertEqual(client.control_queries, [])


class TestServerFailures(unittest.TestCase):
    def test_server_failure_counts_remaining_subjects(self):
        target, client = make_target()
        load_directory(client)
        job = MembershipJob("cn=nope,dc=example,dc=com", ["jdoe", "asmith", "bjones"])
        summary = run(job, [target])
        server = summary.server("ldap1")
        self.assertEqual(server.state, RunState.COMPLETED)
        self.assertEqual((server.success_count, server.error_count), (0, 3))
        self.assertIsNotNone(server.fatal)
        self.assertEqual(client.calls, [])

    def test_lost_connection_fails_only_that_server(self):
        down, down_client = make_target("ldap1")
        down_client.search = Mock(side_effect=ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"}))
        up, up_client = make_target("ldap2")
        load_directory(up_client)
        job = TemplateJob(
            SearchResultSource("ou=people,dc=example,dc=com", "(uid=jdoe)"),
            "changetype: delete\n",
        )
        summary = run(job, [down, up])
        self.assertEqual(summary.server("ldap1").error_count, 1)
        self.assertIn("Can't contact LDAP server", summary.server("ldap1").fatal)
        self.assertEqual(summary.server("ldap2").success_count, 1)
        self.assertEqual(up_client.calls, [("delete", JDOE_DN, None, None)])

    def test_servers_are_independent(self):
        first, first_client = make_target("ldap1")
        second, second_client = make_target("ldap2")
        first_client.failures[user_dn(2)] = ProtocolError(53, "Unwilling to perform")
        summary = run(range_job(1, 3), [first, second])
        self.assertEqual(summary.state, RunState.ABORTED)
        self.assertEqual(summary.server("ldap1").state, RunState.ABORTED)
        self.assertEqual(summary.server("ldap2").state, RunState.COMPLETED)
        self.assertEqual(summary.server("ldap2").success_count, 3)
        self.assertEqual(len(second_client.calls), 3)
        self.assertEqual(summary.error_count, 1)


class TestMembershipRuns(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()
        load_directory(self.client)

    def test_posix_group(self):
        job = MembershipJob(POSIX, "jdoe\nasmith\n")
        summary = run(job, [self.target])
        self.assertEqual(summary.success_count, 2)
        self.assertEqual(self.client.get(POSIX).values("memberUid"), ["jdoe", "asmith"])
        self.assertEqual(job.source.resolvers["ldap1"].state, MembershipState.APPLIED)

    def test_group_of_names(self):
        run(MembershipJob(NAMES, ["jdoe"]), [self.target])
        self.assertEqual(self.client.get(NAMES).values("member"), ["cn=placeholder", JDOE_DN])

    def test_group_of_unique_names(self):
        run(MembershipJob(UNIQUE, ["jdoe"]), [self.target])
        self.assertEqual(self.client.get(UNIQUE).values("uniqueMember"), [JDOE_DN])

    def test_remove(self):
        self.client.get(POSIX).attributes["memberUid"].extend(["jdoe", "asmith"])
        summary = run(MembershipJob(POSIX, ["jdoe"], operation="remove"), [self.target])
        self.assertEqual(summary.success_count, 1)
        self.assertEqual(self.client.get(POSIX).values("memberUid"), ["asmith"])

    def test_missing_user_with_continue(self):
        summary = run(
            MembershipJob(POSIX, ["jdoe", "ghost", "asmith"]),
            [self.target],
            continue_on_error=True,
        )
        server = summary.server("ldap1")
        self.assertEqual((server.success_count, server.error_count), (2, 1))
        self.assertEqual(server.results[-1].label, "ghost")
        self.assertEqual(server.results[-1].error_kind, "NotFoundError")
        self.assertEqual(self.client.get(POSIX).values("memberUid"), ["jdoe", "asmith"])

    def test_missing_user_without_continue(self):
        summary = run(MembershipJob(POSIX, ["jdoe", "ghost", "asmith"]), [self.target])
        server = summary.server("ldap1")
        self.assertEqual(server.state, RunState.ABORTED)
        self.assertEqual((server.success_count, server.error_count), (1, 1))
        self.assertEqual(self.client.get(POSIX).values("memberUid"), ["jdoe"])

    def test_dynamic_group_re_add_is_soft_success(self):
        summary = run(MembershipJob(ENGINEERS, ["bjones"]), [self.target])
        result = summary.server("ldap1").results[0]
        self.assertTrue(result.success)
        self.assertTrue(result.soft)
        entry = self.client.get(BJONES_DN)
        self.assertEqual(entry.values("departmentNumber"), ["eng"])
        self.assertEqual(entry.values("employeeType"), ["staff"])
        self.assertEqual([c[1] for c in self.client.calls], [BJONES_DN, BJONES_DN])

    def test_dynamic_group_remove(self):
        summary = run(MembershipJob(ENGINEERS, ["bjones"], operation="remove"), [self.target])
        result = summary.server("ldap1").results[0]
        self.assertTrue(result.success)
        self.assertTrue(result.soft)
        self.assertEqual(self.client.get(BJONES_DN).values("departmentNumber"), [])

    def test_rejected_dynamic_filter_makes_no_changes(self):
        self.client.load(
            "cn=bad,ou=groups,dc=example,dc=com",
            objectClass=["groupOfURLs"],
            memberURL=["ldap:///dc=example,dc=com??sub?(&(uid=*)(dept=eng))"],
        )
        job = MembershipJob("cn=bad,ou=groups,dc=example,dc=com", ["jdoe", "asmith"])
        summary = run(job, [self.target])
        server = summary.server("ldap1")
        self.assertEqual((server.success_count, server.error_count), (0, 2))
        self.assertEqual(self.client.calls, [])
        self.assertEqual(job.source.resolvers["ldap1"].state, MembershipState.REJECTED)

    def test_no_valid_users(self):
        summary = run(MembershipJob(POSIX, ["ghost", "nobody"]), [self.target], continue_on_error=True)
        server = summary.server("ldap1")
        self.assertEqual(server.error_count, 2)
        self.assertEqual([r.label for r in server.results], ["ghost", "nobody"])
        self.assertEqual(self.client.calls, [])

    def test_generate_mode_reads_but_does_not_write(self):
        summary = run(MembershipJob(POSIX, ["jdoe"]), [self.target], mode=RunMode.GENERATE)
        self.assertEqual(summary.file_name, "group-memberships.ldif")
        self.assertIn("memberUid: jdoe", summary.change_file)
        self.assertEqual(self.client.calls, [])
        self.assertTrue(self.client.searches)


class TestActivityAndEvents(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()
        self.activity = ActivityLog(max_entries=100)

    def test_each_change_is_logged(self):
        executor = MutationExecutor(
            range_job(1, 3), [self.target], RunOptions(continue_on_error=False), self.activity
        )
        executor.run()
        modifications = self.activity.by_category(Category.MODIFY)
        self.assertEqual(len(modifications), 3)
        self.assertEqual(modifications[0].details, f"DN: {user_dn(1)}")
        self.assertEqual(modifications[0].server_name, "ldap1")
        self.assertIn("uid: user1", modifications[0].ldif_data)
        summary = self.activity.by_category(Category.BULK_GENERATE)
        self.assertEqual(summary[0].message, "Processed 3 entries with 0 errors")

    def test_errors_are_logged_as_warnings(self):
        self.client.failures[user_dn(1)] = ProtocolError(50, "Insufficient access")
        MutationExecutor(
            range_job(1, 1), [self.target], RunOptions(continue_on_error=False), self.activity
        ).run()
        warning = self.activity.by_level(Level.WARNING)[0]
        self.assertEqual(warning.message, "Processed 0 entries with 1 errors")
        self.assertIn("#1: Insufficient access", warning.details)

    def test_successful_import_is_logged(self):
        job = LdifImportJob(f"dn: {user_dn(1)}\nchangetype: add\nobjectClass: person\ncn: a\n")
        MutationExecutor(
            job, [self.target], RunOptions(continue_on_error=False), self.activity
        ).run()
        imports = self.activity.by_category(Category.IMPORT)
        self.assertEqual(imports[-1].message, "Imported 1 entries from ldif")

    def test_generate_mode_logs_the_change_file(self):
        MutationExecutor(
            range_job(1, 2),
            [self.target],
            RunOptions(mode=RunMode.GENERATE, continue_on_error=False),
            self.activity,
        ).run()
        entry = self.activity.recent(1)[0]
        self.assertEqual(entry.message, "Generated LDIF for 2 entries with 0 errors")
        self.assertTrue(entry.ldif_data.startswith("# Server: ldap1"))
        self.assertEqual(self.activity.by_category(Category.MODIFY), [])

    def test_events(self):
        events = []
        MutationExecutor(
            range_job(1, 3),
            [self.target],
            RunOptions(continue_on_error=False),
            on_event=events.append,
        ).run()
        kinds = [event.kind for event in events]
        self.assertEqual(kinds[0], EventKind.RUN_STARTED)
        self.assertEqual(kinds[1], EventKind.SERVER_STARTED)
        self.assertEqual(kinds.count(EventKind.SUBJECT_FINISHED), 3)
        self.assertEqual(kinds[-2:], [EventKind.SERVER_FINISHED, EventKind.RUN_FINISHED])
        progress = [e for e in events if e.kind == EventKind.SUBJECT_FINISHED]
        self.assertEqual([(e.processed, e.total) for e in progress], [(1, 3), (2, 3), (3, 3)])
