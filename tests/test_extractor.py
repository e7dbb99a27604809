import unittest

import apexlint


LOOP_SOURCE = """public class LoopSample {
    public void run(List<Account> accounts, Map<Id, List<Account>> byOwner) {
        for (Account acc : accounts) {
            System.debug(acc);
        }
        for (Integer i = 0; i < 10; i++) {
            String s = 'for (x) {';
        }
        while (true) {
            break;
        }
        do {
            x++;
        } while (x < 5);
        for (Map<Id, List<Account>> entry : byOwner) {
            x--;
        }
    }
}
"""

QUERY_SOURCE = """public class QuerySample {
    public void run(String soql) {
        List<Account> a = [SELECT Id FROM Account LIMIT 10];
        List<Contact> c = [
            select Id
            from Contact
        ];
        List<SObject> d = Database.query(soql);
        String s = '[SELECT Id FROM Lead]';
    }
}
"""

DML_SOURCE = """public class DmlSample {
    public void run(Account acc, List<Account> accounts, List<Account> oldRecords) {
        insert acc;
        update accounts;
        Database.delete(oldRecords, false);
        String msg = 'update x;';
        // delete everything;
        upsert new Account(Name = 'x');
    }
}
"""

METHOD_SOURCE = """public with sharing class AccountService {
    @InvocableMethod(label='Sync')
    public static void sync(List<Account> records) {
        List<Contact> contacts = [SELECT Id FROM Contact WHERE AccountId IN :records];
        helper(records);
        this.helper(records);
    }

    @TestVisible

    private static Map<Id, List<Contact>> groupContacts(Map<Id, Account> byId, Integer limitSize) {
        return null;
    }

    public void save(Account acc) {
        update acc;
    }

    private void helper(List<Account> records) {
    }
}
"""

TRIGGER_SOURCE = """trigger AccountTrigger on Account (after insert, after update) {
    List<Contact> contacts = new List<Contact>();
    for (Account acc : Trigger.new) {
        contacts.add(new Contact(LastName = acc.Name, AccountId = acc.Id));
    }
    insert contacts;
}
"""

GUARDED_TRIGGER_SOURCE = """trigger GuardedTrigger on Account (after update) {
    if (TriggerHandler.isFirstRun) {
        TriggerHandler.isFirstRun = false;
        update relatedRecords;
    }
}
"""

COMMENTED_GUARD_SOURCE = """trigger CommentedTrigger on Account (after update) {
    // if (TriggerHandler.isFirstRun) {
    update relatedRecords;
}
"""

FIELD_SOURCE = """public class FieldSample {
    public void run(Account acc) {
        acc.Region__c = 'West';
        String label = 'Ignored__c';
        List<Account> rows = [SELECT Id, Tier__c FROM Account WHERE Score__c > 10];
        System.debug(acc.Owner__r);
    }
}
"""

DEEP_SOURCE = """public class Deep {
    public void run(Integer a) {
        if (a > 0) {
            if (a > 1) {
                if (a > 2) {
                    if (a > 3) {
                        a++;
                    }
                }
            }
        }
    }
}
"""

CHAIN_SOURCE = """public class Chain {
    public void run(Integer a) {
        if (a == 1) {
            a++;
        } else if (a == 2) {
            a--;
        } else {
            if (a > 3) {
                if (a > 4) {
                    a = 0;
                }
            }
        }
    }
}
"""

DRAIN_SOURCE = """public class Drain {
    public void drain(List<Account> queue) {
        do {
            queue.remove(0);
        } while (!queue.isEmpty());
    }
    public void other() {
        Account acc = [SELECT Id FROM Account LIMIT 1];
        if (acc != null) {
            acc.Name = 'x';
        }
    }
}
"""


class LoopExtractionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parsed = apexlint.extract(LOOP_SOURCE)

    def test_loop_kinds(self) -> None:
        kinds = [loop.kind for loop in self.parsed.loops]
        self.assertEqual(kinds, ["for-each", "for", "while", "do-while", "for-each"])

    def test_loop_extent(self) -> None:
        first = self.parsed.loops[0].source_range
        self.assertEqual((first.line_start, first.line_end), (2, 4))
        do_while = self.parsed.loops[3].source_range
        self.assertEqual((do_while.line_start, do_while.line_end), (11, 13))

    def test_do_while_tail_with_call_in_condition(self) -> None:
        parsed = apexlint.extract(DRAIN_SOURCE)
        self.assertEqual([loop.kind for loop in parsed.loops], ["do-while"])
        tail = parsed.loops[0].source_range
        self.assertEqual((tail.line_start, tail.line_end), (2, 4))


class QueryExtractionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parsed = apexlint.extract(QUERY_SOURCE)

    def test_queries_found_outside_strings(self) -> None:
        self.assertEqual(len(self.parsed.queries), 3)

    def test_limit_detection(self) -> None:
        limited, unlimited, dynamic = self.parsed.queries
        self.assertEqual(limited.text, "SELECT Id FROM Account LIMIT 10")
        self.assertTrue(limited.has_limit)
        self.assertFalse(unlimited.has_limit)
        self.assertEqual(unlimited.source_range.line_start, 3)
        self.assertEqual(unlimited.source_range.line_end, 6)
        self.assertTrue(dynamic.is_dynamic)
        self.assertTrue(dynamic.has_limit)


class DataOperationExtractionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parsed = apexlint.extract(DML_SOURCE)

    def test_verbs_in_source_order(self) -> None:
        verbs = [op.verb for op in self.parsed.data_operations]
        self.assertEqual(verbs, ["insert", "update", "delete", "upsert"])

    def test_targets(self) -> None:
        ops = self.parsed.data_operations
        self.assertEqual(ops[0].target_variable, "acc")
        self.assertEqual(ops[1].target_variable, "accounts")
        self.assertEqual(ops[2].target_variable, "oldRecords")
        self.assertTrue(ops[2].qualified)
        self.assertFalse(ops[0].qualified)


class MethodExtractionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parsed = apexlint.extract(METHOD_SOURCE)
        self.methods = {method.name: method for method in self.parsed.methods}

    def test_method_names(self) -> None:
        names = [method.name for method in self.parsed.methods]
        self.assertEqual(names, ["sync", "groupContacts", "save", "helper"])

    def test_method_facts(self) -> None:
        sync = self.methods["sync"]
        self.assertEqual(len(sync.queries), 1)
        self.assertEqual(sync.called_method_names, ["helper"])
        self.assertEqual(sync.data_operations, [])
        self.assertEqual(sync.queries[0].source_range.line_start, 3)

        save = self.methods["save"]
        self.assertEqual([op.target_variable for op in save.data_operations], ["acc"])

    def test_annotations(self) -> None:
        self.assertEqual([a.name for a in self.methods["sync"].annotations], ["InvocableMethod"])
        self.assertEqual([a.name for a in self.methods["groupContacts"].annotations], ["TestVisible"])
        self.assertEqual(self.methods["save"].annotations, [])

    def test_parameters(self) -> None:
        by_id, limit_size = self.methods["groupContacts"].parameters
        self.assertEqual(by_id.name, "byId")
        self.assertEqual(by_id.type, "Map<Id, Account>")
        self.assertEqual(by_id.base_type, "Account")
        self.assertTrue(by_id.is_collection)
        self.assertTrue(by_id.is_sobject)
        self.assertEqual(limit_size.type, "Integer")
        self.assertFalse(limit_size.is_collection)
        self.assertFalse(limit_size.is_sobject)

    def test_declarations_are_not_call_sites(self) -> None:
        names = [call.name for call in self.parsed.method_calls]
        self.assertEqual(names.count("helper"), 2)
        self.assertNotIn("save", names)
        self.assertNotIn("groupContacts", names)


class ParameterParsingTests(unittest.TestCase):
    def test_split_ignores_generic_commas(self) -> None:
        parts = apexlint.split_parameters("Map<Id, List<Account>> m, final String s")
        self.assertEqual(parts, ["Map<Id, List<Account>> m", "final String s"])

    def test_collection_types(self) -> None:
        self.assertEqual(apexlint.parse_collection_type("List<Contact>"), (True, "Contact"))
        self.assertEqual(apexlint.parse_collection_type("Set<Id>"), (True, "Id"))
        self.assertEqual(apexlint.parse_collection_type("Account[]"), (True, "Account"))
        self.assertEqual(apexlint.parse_collection_type("Invoice__c"), (False, "Invoice__c"))

    def test_sobject_detection(self) -> None:
        self.assertTrue(apexlint.is_sobject_type("Account"))
        self.assertTrue(apexlint.is_sobject_type("Invoice__c"))
        self.assertTrue(apexlint.is_sobject_type("Setting__mdt"))
        self.assertFalse(apexlint.is_sobject_type("String"))
        self.assertFalse(apexlint.is_sobject_type("AccountWrapper"))

    def test_final_parameter(self) -> None:
        (param,) = apexlint.parse_parameters("final Account acc")
        self.assertEqual(param.name, "acc")
        self.assertEqual(param.type, "Account")
        self.assertTrue(param.is_sobject)


class HardcodedIdTests(unittest.TestCase):
    def test_ids_and_false_positives(self) -> None:
        source = (
            "String a = '001000000000001AAA';\n"
            "String b = '123456789012345';\n"
            "// String c = '001000000000002AAA';\n"
            "String d = 'abcdef012345678';\n"
            'String e = "0015g00000ABCDE";\n'
            "String f = 'AccountContactRole';\n"
        )
        parsed = apexlint.extract(source)
        values = [record_id.value for record_id in parsed.hardcoded_ids]
        self.assertEqual(values, ["001000000000001AAA", "0015g00000ABCDE"])
        self.assertEqual(parsed.hardcoded_ids[1].source_range.line_start, 4)


class TriggerExtractionTests(unittest.TestCase):
    def test_trigger_facts(self) -> None:
        parsed = apexlint.extract(TRIGGER_SOURCE)
        trigger = parsed.trigger
        self.assertIsNotNone(trigger)
        self.assertTrue(parsed.is_trigger)
        self.assertEqual(trigger.name, "AccountTrigger")
        self.assertEqual(trigger.object_name, "Account")
        self.assertEqual(trigger.events, ["after insert", "after update"])
        self.assertEqual(trigger.header_range, apexlint.SourceRange(0, 0, 0, 22))
        self.assertEqual([op.verb for op in trigger.data_operations], ["insert"])
        self.assertFalse(trigger.has_recursion_guard)
        self.assertEqual(parsed.methods, [])

    def test_recursion_guard_idioms(self) -> None:
        self.assertTrue(apexlint.extract(GUARDED_TRIGGER_SOURCE).trigger.has_recursion_guard)
        self.assertFalse(apexlint.extract(COMMENTED_GUARD_SOURCE).trigger.has_recursion_guard)

    def test_class_is_not_trigger(self) -> None:
        parsed = apexlint.extract(METHOD_SOURCE)
        self.assertIsNone(parsed.trigger)
        self.assertFalse(parsed.is_trigger)


class FieldReferenceTests(unittest.TestCase):
    def test_field_passes(self) -> None:
        parsed = apexlint.extract(FIELD_SOURCE)
        names = {reference.name for reference in parsed.field_references}
        self.assertEqual(names, {"Region__c", "Tier__c", "Score__c", "Owner__r"})

    def test_relationship_reference_keeps_owner(self) -> None:
        parsed = apexlint.extract(FIELD_SOURCE)
        owner = [ref for ref in parsed.field_references if ref.name == "Owner__r"][0]
        self.assertEqual(owner.object_name, "acc")
        self.assertFalse(owner.is_custom)

    def test_bulk_select_is_ignored(self) -> None:
        columns = ", ".join("Field%d__c" % i for i in range(16))
        source = "List<Account> rows = [SELECT %s FROM Account];\n" % columns
        parsed = apexlint.extract(source)
        self.assertEqual(parsed.field_references, [])


class ClassFactTests(unittest.TestCase):
    def test_test_class_detection(self) -> None:
        parsed = apexlint.extract("@isTest\nprivate class FooTest {\n}\n")
        self.assertTrue(parsed.is_test_class)
        self.assertEqual(parsed.class_name, "FooTest")

    def test_plain_class(self) -> None:
        parsed = apexlint.extract(METHOD_SOURCE)
        self.assertFalse(parsed.is_test_class)
        self.assertEqual(parsed.class_name, "AccountService")


class NestingExtractionTests(unittest.TestCase):
    def test_every_nested_line_is_recorded(self) -> None:
        parsed = apexlint.extract(DEEP_SOURCE)
        self.assertEqual(
            [(n.depth, n.source_range.line_start) for n in parsed.deep_nestings],
            [(2, 3), (3, 4), (4, 5)],
        )
        nesting = parsed.deep_nestings[-1]
        self.assertEqual(nesting.block_kind, "if")
        self.assertEqual(nesting.source_range.col_start, 20)
        self.assertEqual(nesting.source_range.col_end, 22)

    def test_else_continues_enclosing_if(self) -> None:
        nestings = apexlint.extract(CHAIN_SOURCE).deep_nestings
        self.assertEqual([(n.depth, n.source_range.line_start) for n in nestings], [(2, 7), (3, 8)])

    def test_braceless_chain_keeps_deepest_per_line(self) -> None:
        source = "if (a) if (b) if (c) if (d) if (e) x = 1;\nif (f) {\n}\n"
        nestings = apexlint.extract(source).deep_nestings
        self.assertEqual(len(nestings), 1)
        self.assertEqual(nestings[0].depth, 5)
        self.assertEqual(nestings[0].source_range.line_start, 0)
        self.assertEqual(nestings[0].source_range.col_start, 28)

    def test_for_header_semicolons_do_not_close(self) -> None:
        source = (
            "if (a) {\n"
            "    for (Integer i = 0; i < 3; i++) {\n"
            "        while (b) {\n"
            "            try {\n"
            "                x();\n"
            "            } catch (Exception e) {\n"
            "            }\n"
            "        }\n"
            "    }\n"
            "}\n"
        )
        nestings = apexlint.extract(source).deep_nestings
        self.assertEqual(
            [(n.block_kind, n.depth) for n in nestings],
            [("for", 2), ("while", 3), ("try", 4)],
        )

    def test_top_level_constructs_are_not_recorded(self) -> None:
        self.assertEqual(apexlint.extract("if (a) {\n}\nwhile (b) {\n}\n").deep_nestings, [])


class RobustnessTests(unittest.TestCase):
    def test_unterminated_source_does_not_raise(self) -> None:
        parsed = apexlint.extract("public class Broken {\n public void run() {\n if (x) {\n update acc;")
        self.assertEqual(parsed.methods, [])
        self.assertEqual([op.verb for op in parsed.data_operations], ["update"])

    def test_extraction_is_idempotent(self) -> None:
        for source in (LOOP_SOURCE, METHOD_SOURCE, TRIGGER_SOURCE, FIELD_SOURCE, DEEP_SOURCE):
            self.assertEqual(apexlint.extract(source), apexlint.extract(source))


if __name__ == "__main__":
    unittest.main()
