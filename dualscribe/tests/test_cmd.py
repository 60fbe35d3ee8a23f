import io
from unittest import mock

import fixtures

from dualscribe import cmd
from dualscribe import config
from dualscribe.messages import StreamId
from dualscribe.tests import base


class SettingsTestCase(base.TestCase):
    def test_defaults(self):
        settings = config.Settings()
        self.assertEqual(0.8, settings.transcript.similarity_threshold)
        self.assertEqual(3000, settings.transcript.duplicate_time_window)
        self.assertEqual(StreamId.SYSTEM, settings.transcript.preferred_stream)
        self.assertEqual(1600, settings.capture.frames_per_buffer)

    def test_environment_overrides(self):
        self.useFixture(fixtures.EnvironmentVariable(
            'DUALSCRIBE_TRANSCRIPT__SIMILARITY_THRESHOLD', '0.65'))
        self.useFixture(fixtures.EnvironmentVariable(
            'DUALSCRIBE_RECOGNIZER__API_KEY', 'secret'))
        settings = config.Settings()
        self.assertEqual(0.65, settings.transcript.similarity_threshold)
        self.assertEqual('secret',
                         settings.recognizer.api_key.get_secret_value())
        self.assertNotIn('secret', repr(settings.recognizer))

    def test_threshold_bounds_validated(self):
        self.assertRaises(ValueError, config.TranscriptSettings,
                          similarity_threshold=1.2)
        self.assertRaises(ValueError, config.TranscriptSettings,
                          max_buffer_size=0)


class ParseArgsTestCase(base.TestCase):
    def test_transcribe_args_applied(self):
        args = cmd.parse_args([
            'transcribe', '-m', '2', '-s', '5', '-k', 'key', '-l', 'es-ES',
            '-o', '/tmp/out', '-p', 'microphone', '-e', 'csv', '-t', '1.5',
        ])
        self.assertIs(cmd.cmd_transcribe, args.func)
        settings = cmd.apply_args(config.Settings(), args)

        self.assertEqual(2, settings.capture.mic_device_index)
        self.assertEqual(5, settings.capture.system_device_index)
        self.assertEqual('key', settings.recognizer.api_key.get_secret_value())
        self.assertEqual('es-ES', settings.recognizer.language)
        self.assertEqual('/tmp/out', settings.transcript.save_directory)
        self.assertEqual(StreamId.MICROPHONE,
                         settings.transcript.preferred_stream)
        self.assertEqual('csv', args.export)
        self.assertEqual(1.5, args.duration)

    def test_no_preference(self):
        args = cmd.parse_args(['transcribe', '-p', 'none'])
        settings = cmd.apply_args(config.Settings(), args)
        self.assertIsNone(settings.transcript.preferred_stream)

    def test_list_devices(self):
        args = cmd.parse_args(['list-devices'])
        self.assertIs(cmd.cmd_list_devices, args.func)

    def test_list_devices_output(self):
        devices = [{'id': 1, 'label': 'Headset', 'kind': 'input'}]
        stdout = io.StringIO()
        with mock.patch('dualscribe.audio.enumerate_devices',
                        return_value=devices):
            with mock.patch('sys.stdout', stdout):
                cmd.cmd_list_devices(None)
        self.assertEqual('[ 1] input  Headset\n', stdout.getvalue())

    def test_print_event(self):
        stdout = io.StringIO()
        with mock.patch('sys.stdout', stdout):
            cmd.print_event('final-transcript',
                            {'speaker': 'Other', 'text': 'hi'})
            cmd.print_event('interim-transcript',
                            {'speaker': 'Other', 'text': 'h'})
        self.assertEqual('[Other] hi\n', stdout.getvalue())
