import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from botocore.exceptions import UnauthorizedSSOTokenError
from rich.console import Console

from s3pull.app import EXIT_FATAL, build_parser, main, run_transfer
from s3pull.config import FILE_DEFAULTS, EndpointConfig, RunConfig
from s3pull.s3 import PermanentError

from fakes import FakeObjectClient, throttled

UPLOAD_TO_BACKUP = [
    "-b",
    "bucket-a",
    "--upload-bucket",
    "bucket-b",
    "--upload-profile",
    "backup",
]


class _CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch("s3pull.app.load_file_defaults", return_value=dict(FILE_DEFAULTS))
        patcher.start()
        self.addCleanup(patcher.stop)


class TestCliDispatch(_CliTestCase):
    def test_download_only_dispatches(self) -> None:
        source = FakeObjectClient()
        with patch("s3pull.app._build_clients", return_value=(source, None)):
            with patch("s3pull.app.run_transfer", return_value=0) as run:
                code = main(["-b", "bucket-a", "--prefix", "logs/", "-d", "/tmp/out"])

        self.assertEqual(code, 0)
        config = run.call_args.args[0]
        self.assertEqual(config.source, EndpointConfig(bucket="bucket-a", prefix="logs/"))
        self.assertEqual(config.download_path, Path("/tmp/out"))
        self.assertIsNone(config.destination)
        self.assertEqual(config.concurrency, FILE_DEFAULTS["concurrency"])
        self.assertIs(run.call_args.args[1], source)

    def test_upload_options_build_destination(self) -> None:
        with patch("s3pull.app._build_clients", return_value=(None, None)):
            with patch("s3pull.app.run_transfer", return_value=1) as run:
                code = main(
                    [
                        "-b",
                        "bucket-a",
                        "--upload-bucket",
                        "bucket-b",
                        "--upload-profile",
                        "backup",
                        "--upload-prefix",
                        "mirror/",
                        "-c",
                        "8",
                    ]
                )

        self.assertEqual(code, 1)
        config = run.call_args.args[0]
        self.assertEqual(
            config.destination,
            EndpointConfig(bucket="bucket-b", prefix="mirror/", profile="backup"),
        )
        self.assertEqual(config.concurrency, 8)

    def test_upload_bucket_requires_profile_or_region(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main(["-b", "bucket-a", "--upload-bucket", "bucket-b"])
        self.assertEqual(ctx.exception.code, 2)

    def test_invalid_concurrency_is_fatal(self) -> None:
        with patch("s3pull.app._build_clients") as build:
            code = main(["-b", "bucket-a", "-c", "0"])
        build.assert_not_called()
        self.assertEqual(code, EXIT_FATAL)

    def test_credential_failure_is_fatal(self) -> None:
        with patch(
            "s3pull.app._build_clients",
            side_effect=PermanentError("ProfileNotFound: ghost"),
        ):
            with patch("s3pull.app.run_transfer") as run:
                code = main(["-b", "bucket-a", "-p", "ghost"])
        run.assert_not_called()
        self.assertEqual(code, EXIT_FATAL)

    def test_destination_without_credentials_is_fatal(self) -> None:
        sessions = {}

        def session_for(profile_name=None):
            session = MagicMock()
            if profile_name == "backup":
                session.get_credentials.return_value = None
            sessions[profile_name] = session
            return session

        with patch("s3pull.s3.boto3.session.Session", side_effect=session_for):
            with patch("s3pull.app.run_transfer") as run:
                code = main(UPLOAD_TO_BACKUP)

        self.assertEqual(code, EXIT_FATAL)
        run.assert_not_called()
        source_s3 = sessions[None].client.return_value
        source_s3.get_object.assert_not_called()
        source_s3.list_objects_v2.assert_not_called()

    def test_expired_destination_sso_session_is_fatal(self) -> None:
        def session_for(profile_name=None):
            session = MagicMock()
            if profile_name == "backup":
                credentials = session.get_credentials.return_value
                credentials.get_frozen_credentials.side_effect = (
                    UnauthorizedSSOTokenError()
                )
            return session

        with patch("s3pull.s3.boto3.session.Session", side_effect=session_for):
            with patch("s3pull.app.run_transfer") as run:
                code = main(UPLOAD_TO_BACKUP)

        self.assertEqual(code, EXIT_FATAL)
        run.assert_not_called()

    def test_parser_uses_file_defaults(self) -> None:
        defaults = dict(FILE_DEFAULTS, concurrency=12, download_path="/data")
        args = build_parser(defaults).parse_args(["-b", "bucket-a"])
        self.assertEqual(args.concurrency, 12)
        self.assertEqual(args.download_path, "/data")


class TestRunTransfer(unittest.TestCase):
    def _config(self, root: str, **kwargs) -> RunConfig:
        kwargs.setdefault("source", EndpointConfig(bucket="bucket-a"))
        kwargs.setdefault("base_delay", 0.0)
        kwargs.setdefault("max_attempts", 2)
        return RunConfig(download_path=Path(root), **kwargs)

    def _console(self) -> Console:
        return Console(file=io.StringIO(), width=120)

    def test_successful_run_exits_zero(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            source = FakeObjectClient({"a.txt": b"0123456789", "dir/b.txt": b""})
            code = run_transfer(
                self._config(temp_dir), source, console=self._console(), show_progress=False
            )
            self.assertEqual(code, 0)
            self.assertTrue((Path(temp_dir) / "dir" / "b.txt").exists())

    def test_failed_objects_exit_nonzero_and_are_written_out(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            failures_file = Path(temp_dir) / "failed.json"
            source = FakeObjectClient({"a.txt": b"x", "b.txt": b"y"})
            source.fail_always("get", "b.txt", throttled())
            config = self._config(
                str(Path(temp_dir) / "files"), failures_file=failures_file
            )
            code = run_transfer(config, source, console=self._console(), show_progress=False)

            self.assertEqual(code, 1)
            payload = json.loads(failures_file.read_text())
            self.assertEqual([row["key"] for row in payload["objects"]], ["b.txt"])
            self.assertEqual(source.count("get", "b.txt"), 2)

    def test_clean_run_resets_failures_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            failures_file = Path(temp_dir) / "failed.json"
            failures_file.write_text(
                json.dumps({"failed": 1, "objects": [{"key": "a.txt"}]})
            )
            source = FakeObjectClient({"a.txt": b"x"})
            config = self._config(
                str(Path(temp_dir) / "files"), failures_file=failures_file
            )
            code = run_transfer(config, source, console=self._console(), show_progress=False)

            self.assertEqual(code, 0)
            self.assertEqual(
                json.loads(failures_file.read_text()), {"failed": 0, "objects": []}
            )

    def test_sync_run_mirrors_missing_objects(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            source = FakeObjectClient({"a.txt": b"x", "dir/b.txt": b""})
            destination = FakeObjectClient({"a.txt": b"x"})
            config = self._config(
                temp_dir, destination=EndpointConfig(bucket="bucket-b", region="us-west-2")
            )
            code = run_transfer(
                config, source, destination, console=self._console(), show_progress=False
            )
            self.assertEqual(code, 0)
            self.assertEqual(destination.count("put"), 1)
            self.assertIn("dir/b.txt", destination.objects)

    def test_listing_failure_exits_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            source = FakeObjectClient({"a.txt": b"x"})
            source.list_failures = [PermanentError("AccessDenied")]
            code = run_transfer(
                self._config(temp_dir), source, console=self._console(), show_progress=False
            )
            self.assertEqual(code, EXIT_FATAL)
            self.assertEqual(source.count("get"), 0)

    def test_dry_run_transfers_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            source = FakeObjectClient({"a.txt": b"x", "dir/b.txt": b"yy"})
            with patch("sys.stdout", new_callable=io.StringIO) as stdout:
                code = run_transfer(
                    self._config(temp_dir, dry_run=True),
                    source,
                    console=self._console(),
                    show_progress=False,
                )
            self.assertEqual(code, 0)
            self.assertEqual(source.count("get"), 0)
            self.assertIn("dir/b.txt", stdout.getvalue())
            self.assertIn("2 objects", stdout.getvalue())
            self.assertEqual(list(Path(temp_dir).iterdir()), [])


if __name__ == "__main__":
    unittest.main()
