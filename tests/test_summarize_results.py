import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

import summarize_results
from analyzer.completion_client import CompletionError


class SummarizeResultsTest(unittest.TestCase):
    def test_reads_responses_skipping_errors_and_blanks(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "results.csv"
            path.write_text(
                "Record ID,RecordId,Original Text,Response\n"
                "1,A1,t,first\n2,A2,t,Error: boom\n3,A3,t,\n4,A4,t,\"multi\nline\"\n",
                encoding="utf-8",
            )
            responses = summarize_results.read_responses(path)
        self.assertEqual(responses, ["first", "multi\nline"])

    def test_batches_are_combined_and_summarized(self) -> None:
        service = mock.Mock()
        service.complete.side_effect = ["summary one", CompletionError("LM Studio API error: 500 - x")]
        batches = summarize_results.chunk_list(["a", "b", "c"], 2)
        with mock.patch("builtins.print"):
            summaries = summarize_results.summarize_batches(batches, "Themes?", service)

        self.assertEqual(batches, [["a", "b"], ["c"]])
        first_call = service.complete.call_args_list[0].args[0]
        self.assertEqual(first_call, "Themes?\n\nResponse 1:\na\n\n---\n\nResponse 2:\nb")
        self.assertEqual(summaries[0].summary, "summary one")
        self.assertTrue(summaries[1].summary.startswith("Error: "))

    def test_report_layout_and_default_name(self) -> None:
        generated = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
        report = summarize_results.render_report(
            [summarize_results.BatchSummary(1, 2, "themes")], "Themes?", generated
        )
        self.assertIn("Total Batches: 1", report)
        self.assertIn("BATCH 1 (2 responses)\n" + "-" * 80 + "\nthemes", report)
        self.assertEqual(
            summarize_results.default_report_path(Path("out/results.csv"), 5, generated),
            Path("out/results_summary_batch5_2024-05-01T12-30-00.txt"),
        )

    def test_invalid_batch_size(self) -> None:
        with mock.patch("builtins.print"):
            self.assertEqual(summarize_results.main(["results.csv", "-b", "0", "-p", "x"]), 1)


if __name__ == "__main__":
    unittest.main()
