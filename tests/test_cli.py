import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from analyzer import cli


class CliTest(unittest.TestCase):
    def test_defaults_and_output_name(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cwd = os.getcwd()
            os.chdir(tmpdir)
            try:
                args = cli.parse_args(["Survey__c", "Q1, Q2", "Find themes", "ids.csv"])
            finally:
                os.chdir(cwd)
        self.assertEqual(args.field_names, ["Q1", "Q2"])
        self.assertEqual(args.output, Path("Survey__c_Q1_Q2_results.csv"))
        self.assertEqual(args.chunk_size, 450)
        self.assertEqual(args.max_parallel_requests, 1)

    def test_config_supplies_defaults_but_cli_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = Path(tmpdir) / "conf.toml"
            config.write_text("chunk_size = 100\npage_size = 50\n", encoding="utf-8")
            args = cli.parse_args(
                ["Survey__c", "Q1", "p", "ids.csv", "--config", str(config), "--page-size", "25"]
            )
        self.assertEqual(args.chunk_size, 100)
        self.assertEqual(args.page_size, 25)

    def test_invalid_chunk_size_is_rejected(self) -> None:
        with mock.patch("sys.stderr"):
            with self.assertRaises(SystemExit):
                cli.parse_args(["Survey__c", "Q1", "p", "ids.csv", "--chunk-size", "0"])


if __name__ == "__main__":
    unittest.main()
