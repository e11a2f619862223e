import unittest
from unittest import mock

import requests

from analyzer.auth import Session
from analyzer.record_store import (
    MetadataError,
    NetworkError,
    QueryError,
    SalesforceRecordStore,
    build_soql,
    escape_soql_value,
)


def make_response(status: int = 200, payload=None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.text = text
    response.json.return_value = payload
    return response


class SalesforceRecordStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SalesforceRecordStore(
            Session("token", "https://example.my.salesforce.com/", expires_at=0.0),
            api_version="v58.0",
        )

    def test_soql_escapes_and_orders(self) -> None:
        soql = build_soql("Survey__c", ["Q1", "Id"], "RecordId", ["A1", "O'Brien"])
        self.assertEqual(
            soql,
            "SELECT Id, Q1, RecordId FROM Survey__c WHERE RecordId IN ('A1','O\\'Brien') ORDER BY Id",
        )
        self.assertEqual(escape_soql_value("a\\b"), "a\\\\b")

    def test_query_then_continuation(self) -> None:
        first = make_response(
            payload={
                "done": False,
                "nextRecordsUrl": "/services/data/v58.0/query/01g-200",
                "records": [{"Id": "001", "RecordId": "A1", "Q1": "hello", "Owner": {"Name": "x"}}],
            }
        )
        second = make_response(payload={"done": True, "records": [{"Id": "002", "RecordId": "A1", "Q1": None}]})
        with mock.patch("analyzer.record_store.requests.get", side_effect=[first, second]) as get:
            page = self.store.query("Survey__c", ["Q1", "Owner.Name"], "RecordId", ["A1"], 200)
            last = self.store.query_continuation(page.next_token)

        self.assertEqual(page.records[0].fields, {"Q1": "hello", "Owner.Name": "x"})
        self.assertEqual(page.records[0].filter_value, "A1")
        self.assertEqual(last.records[0].fields["Q1"], None)
        self.assertIsNone(last.next_token)

        query_call, continuation_call = get.call_args_list
        self.assertEqual(query_call.args[0], "https://example.my.salesforce.com/services/data/v58.0/query")
        self.assertIn("IN ('A1')", query_call.kwargs["params"]["q"])
        self.assertEqual(query_call.kwargs["headers"]["Sforce-Query-Options"], "batchSize=200")
        self.assertEqual(query_call.kwargs["headers"]["Authorization"], "Bearer token")
        self.assertEqual(
            continuation_call.args[0],
            "https://example.my.salesforce.com/services/data/v58.0/query/01g-200",
        )

    def test_query_error_carries_status_and_body(self) -> None:
        failure = make_response(status=400, text='[{"errorCode":"MALFORMED_QUERY"}]')
        with mock.patch("analyzer.record_store.requests.get", return_value=failure):
            with self.assertRaises(QueryError) as ctx:
                self.store.query("Survey__c", ["Q1"], "RecordId", ["A1"], 200)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("MALFORMED_QUERY", str(ctx.exception))

    def test_network_failure(self) -> None:
        with mock.patch(
            "analyzer.record_store.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            with self.assertRaises(NetworkError):
                self.store.query("Survey__c", ["Q1"], "RecordId", ["A1"], 200)

    def test_describe_matches_names_case_insensitively(self) -> None:
        described = make_response(
            payload={"fields": [{"name": "Q1__c", "label": "Question 1"}, {"name": "Other", "label": "Other"}]}
        )
        with mock.patch("analyzer.record_store.requests.get", return_value=described) as get:
            labels = self.store.describe_fields("Survey__c", ["q1__c", "Missing"])
        self.assertEqual(labels, {"q1__c": "Question 1"})
        self.assertTrue(get.call_args.args[0].endswith("/sobjects/Survey__c/describe"))

    def test_describe_failure_is_metadata_error(self) -> None:
        with mock.patch("analyzer.record_store.requests.get", return_value=make_response(status=404, text="nope")):
            with self.assertRaises(MetadataError):
                self.store.describe_fields("Missing__c", ["Q1"])


    def test_continuations_keep_the_fields_of_their_own_query(self) -> None:
        survey_first = make_response(
            payload={
                "done": False,
                "nextRecordsUrl": "/services/data/v58.0/query/01g-survey",
                "records": [{"Id": "001", "RecordId": "A1", "Q1": "one"}],
            }
        )
        case_first = make_response(
            payload={
                "done": False,
                "nextRecordsUrl": "/services/data/v58.0/query/01g-case",
                "records": [{"Id": "500", "CaseNumber": "C1", "Subject": "s1"}],
            }
        )
        survey_rest = make_response(payload={"done": True, "records": [{"Id": "002", "RecordId": "A2", "Q1": "two"}]})
        with mock.patch(
            "analyzer.record_store.requests.get",
            side_effect=[survey_first, case_first, survey_rest],
        ):
            survey_page = self.store.query("Survey__c", ["Q1"], "RecordId", ["A1", "A2"], 200)
            case_page = self.store.query("Case", ["Subject"], "CaseNumber", ["C1"], 200)
            rest = self.store.query_continuation(survey_page.next_token)

        self.assertEqual(case_page.next_token, "/services/data/v58.0/query/01g-case")
        self.assertEqual(rest.records[0].fields, {"Q1": "two"})
        self.assertEqual(rest.records[0].filter_value, "A2")

    def test_unknown_continuation_token_is_rejected(self) -> None:
        with mock.patch("analyzer.record_store.requests.get") as get:
            with self.assertRaises(QueryError):
                self.store.query_continuation("/services/data/v58.0/query/01g-unknown")
        get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
