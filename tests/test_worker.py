import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from mapsync import worker  # noqa: E402
from mapsync.services.pipeline_service import PipelineReport  # noqa: E402


class WorkerTests(unittest.TestCase):
    def test_parse_args(self):
        args = worker.parse_args(['--once', '--entity', 'artikel', '--entity', 'lager'])
        self.assertTrue(args.once)
        self.assertEqual(args.entity, ['artikel', 'lager'])
        self.assertFalse(args.no_delta)

    @patch('mapsync.worker.signal.signal')
    @patch('mapsync.worker.bootstrap_database')
    @patch('mapsync.worker.validate_production_config')
    @patch('mapsync.worker.configure_logging')
    @patch('mapsync.worker.build_pipeline')
    def test_once_runs_a_single_pass(self, build_pipeline, _logging, validate, bootstrap, _signal):
        pipeline = MagicMock()
        pipeline.run_all.return_value = PipelineReport()
        build_pipeline.return_value = pipeline

        self.assertEqual(worker.main(['--once', '--entity', 'artikel', '--no-delta']), 0)
        validate.assert_called_once()
        bootstrap.assert_called_once()
        pipeline.run_all.assert_called_once()
        call = pipeline.run_all.call_args
        self.assertEqual(call.args[0], ['artikel'])
        self.assertFalse(call.kwargs['export_delta'])

    @patch('mapsync.worker.signal.signal')
    @patch('mapsync.worker.bootstrap_database')
    @patch('mapsync.worker.validate_production_config')
    @patch('mapsync.worker.configure_logging')
    @patch('mapsync.worker.build_pipeline')
    def test_failed_pass_sets_exit_code(self, build_pipeline, *_mocks):
        pipeline = MagicMock()
        pipeline.run_all.return_value = PipelineReport(failures={'artikel': 'read: boom'})
        build_pipeline.return_value = pipeline
        self.assertEqual(worker.main(['--once']), 1)


if __name__ == '__main__':
    unittest.main()
