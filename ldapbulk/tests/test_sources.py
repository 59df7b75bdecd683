import unittest

from ldapbulk.exceptions import AmbiguousMatchError, NotFoundError, ValidationError
from ldapbulk.sources import CsvSource, LdifSource, MembershipSource, RangeSource, SearchResultSource

from .fakes import load_directory, make_target


class TestRangeSource(unittest.TestCase):
    def test_inclusive_range(self):
        source = RangeSource(3, 5)
        source.validate()
        subjects = list(source.produce(None))
        self.assertEqual([s.bindings["COUNT"] for s in subjects], ["3", "4", "5"])
        self.assertEqual([s.index for s in subjects], [0, 1, 2])
        self.assertEqual(source.size(None), 3)

    def test_restartable(self):
        source = RangeSource(1, 2)
        self.assertEqual(list(source.produce(None)), list(source.produce(None)))

    def test_single_value(self):
        self.assertEqual(len(list(RangeSource(7, 7).produce(None))), 1)

    def test_start_after_end(self):
        with self.assertRaises(ValidationError):
            RangeSource(5, 1).validate()

    def test_non_integer(self):
        with self.assertRaises(ValidationError):
            RangeSource("1", 5).validate()


class TestSearchResultSource(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()
        load_directory(self.client)

    def test_entries_become_subjects(self):
        source = SearchResultSource("ou=people,dc=example,dc=com", "(objectClass=inetOrgPerson)")
        subjects = list(source.produce(self.target))
        self.assertEqual(
            [s.bindings["DN"] for s in subjects],
            ["uid=jdoe,ou=people,dc=example,dc=com", "uid=bjones,ou=people,dc=example,dc=com"],
        )
        self.assertEqual(subjects[0].attributes["mail"], ["jdoe@example.com"])
        self.assertEqual(source.size(self.target), 2)

    def test_no_results(self):
        source = SearchResultSource("dc=example,dc=com", "(uid=nobody)")
        with self.assertLogs("ldapbulk.sources", level="INFO"):
            self.assertEqual(list(source.produce(self.target)), [])
        self.assertEqual(source.size(self.target), 0)

    def test_base_and_filter_required(self):
        with self.assertRaises(ValidationError):
            SearchResultSource("", "(uid=a)").validate()
        with self.assertRaises(ValidationError):
            SearchResultSource("dc=x", "  ").validate()


class TestCsvSource(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()
        load_directory(self.client)

    def test_columns_and_dn_column(self):
        source = CsvSource('uid=a,"Smith, Anne"\n\nuid=b,Bob\n')
        source.validate()
        subjects = list(source.produce(self.target))
        self.assertEqual(len(subjects), 2)
        self.assertEqual(subjects[0].bindings, {"C1": "uid=a", "C2": "Smith, Anne", "DN": "uid=a"})
        self.assertEqual(subjects[1].bindings["DN"], "uid=b")

    def test_quote_handling(self):
        text = 'uid=a;"Anne"\n'
        source = CsvSource(text.replace(";", ","), strip_quotes=True)
        self.assertEqual(source.rows(), [["uid=a", "Anne"]])
        source = CsvSource(text.replace(";", ","), strip_quotes=False)
        self.assertEqual(source.rows(), [["uid=a", '"Anne"']])

    def test_header_is_skipped(self):
        source = CsvSource("dn,cn\nuid=a,Anne\n", has_header=True)
        self.assertEqual(source.rows(), [["uid=a", "Anne"]])
        self.assertEqual(source.size(self.target), 1)

    def test_empty_dn_column(self):
        source = CsvSource(",Anne\n")
        subject = next(source.produce(self.target))
        self.assertIsInstance(subject.error, ValidationError)

    def test_dn_by_search(self):
        source = CsvSource(
            "jdoe,Engineer\nghost,Nobody\n",
            dn_method="search",
            search_filter="(&(objectClass=inetOrgPerson)(uid={C1}))",
        )
        source.validate()
        found, missing = list(source.produce(self.target))
        self.assertEqual(found.bindings["DN"], "uid=jdoe,ou=people,dc=example,dc=com")
        self.assertEqual(found.bindings["C2"], "Engineer")
        self.assertEqual(found.attributes["mail"], ["jdoe@example.com"])
        self.assertIsInstance(missing.error, NotFoundError)

    def test_search_values_are_escaped(self):
        source = CsvSource("j*\n", dn_method="search", search_filter="(uid={C1})")
        subject = next(source.produce(self.target))
        self.assertIsInstance(subject.error, NotFoundError)
        self.assertEqual(self.client.searches[-1][1], r"(uid=j\2a)")

    def test_escaped_search_matches_the_literal_value(self):
        self.client.load("uid=j*,ou=people,dc=example,dc=com", objectClass=["inetOrgPerson"], uid=["j*"])
        source = CsvSource("j*\n", dn_method="search", search_filter="(uid={C1})")
        subject = next(source.produce(self.target))
        self.assertEqual(subject.bindings["DN"], "uid=j*,ou=people,dc=example,dc=com")

    def test_ambiguous_search(self):
        source = CsvSource("x\n", dn_method="search", search_filter="(cn=*o*)")
        subject = next(source.produce(self.target))
        self.assertIsInstance(subject.error, AmbiguousMatchError)

    def test_validation(self):
        with self.assertRaises(ValidationError):
            CsvSource("   ").validate()
        with self.assertRaises(ValidationError):
            CsvSource("a,b", dn_method="guess").validate()
        with self.assertRaises(ValidationError):
            CsvSource("a,b", dn_method="search").validate()
        with self.assertRaises(ValidationError):
            CsvSource("dn,cn\n", has_header=True).validate()


class TestLdifSource(unittest.TestCase):
    def test_one_subject_per_record(self):
        source = LdifSource(
            "version: 1\n\ndn: cn=a,dc=x\nchangetype: delete\n\n# note\ndn: cn=b,dc=x\nchangetype: delete\n"
        )
        source.validate()
        subjects = list(source.produce(None))
        self.assertEqual([s.label for s in subjects], ["dn: cn=a,dc=x", "dn: cn=b,dc=x"])
        self.assertEqual(subjects[1].payload, "# note\ndn: cn=b,dc=x\nchangetype: delete")
        self.assertEqual(source.size(None), 2)

    def test_blank(self):
        with self.assertRaises(ValidationError):
            LdifSource("\n\n").validate()
        with self.assertRaises(ValidationError):
            LdifSource("# just a comment\n").validate()


class TestMembershipSource(unittest.TestCase):
    def setUp(self):
        self.target, self.client = make_target()
        load_directory(self.client)

    def test_valid_members_come_first(self):
        source = MembershipSource(
            "cn=posix,ou=groups,dc=example,dc=com", ["ghost", "jdoe", "asmith"]
        )
        subjects = list(source.produce(self.target, continue_on_error=True))
        self.assertEqual([s.label for s in subjects], ["jdoe", "asmith", "ghost"])
        self.assertIsNone(subjects[0].error)
        self.assertIsInstance(subjects[2].error, NotFoundError)
        self.assertEqual(source.size(self.target), 3)

    def test_validation(self):
        with self.assertRaises(ValidationError):
            MembershipSource("", ["jdoe"]).validate()
        with self.assertRaises(ValidationError):
            MembershipSource("cn=g", []).validate()
