import argparse
import asyncio
import json
import logging
import sys

from pydantic import SecretStr

from dualscribe import audio
from dualscribe import config
from dualscribe import orchestrator
from dualscribe.errors import DualscribeError, RecordingStartError
from dualscribe.messages import StreamId


def parse_args(argv):
    parser = argparse.ArgumentParser(
        description='Transcribe the microphone and system audio.')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable debug logging.')
    subparsers = parser.add_subparsers(dest='command', help='command')

    parser_transcribe = subparsers.add_parser(
        'transcribe', help='Record and transcribe both streams.')
    parser_transcribe.add_argument('-m', '--mic-device-index', type=int,
                                   help='PyAudio index of the microphone.')
    parser_transcribe.add_argument('-s', '--system-device-index', type=int,
                                   help='PyAudio index of the loopback or '
                                        'monitor device.')
    parser_transcribe.add_argument('--rate', type=int,
                                   default=config.SAMPLE_RATE,
                                   help='Native sample rate of the devices.')
    parser_transcribe.add_argument('--channels', type=int,
                                   default=config.CHANNELS,
                                   help='Native channel count of the '
                                        'devices.')
    parser_transcribe.add_argument('-u', '--url', type=str,
                                   help='Websocket URL of the recognizer.')
    parser_transcribe.add_argument('-k', '--api-key', type=str,
                                   help='Recognizer API key. Defaults to '
                                        'DUALSCRIBE_RECOGNIZER__API_KEY.')
    parser_transcribe.add_argument('-l', '--language', type=str,
                                   help='Recognition language.')
    parser_transcribe.add_argument('-t', '--duration', type=float,
                                   help='Stop after this many seconds.')
    parser_transcribe.add_argument('-o', '--save-dir', type=str,
                                   help='Directory session files are '
                                        'written to.')
    parser_transcribe.add_argument('-p', '--prefer',
                                   choices=['system', 'microphone', 'none'],
                                   help='Stream kept when both hear the same '
                                        'utterance.')
    parser_transcribe.add_argument('-e', '--export',
                                   choices=['json', 'text', 'csv',
                                            'subtitle'],
                                   help='Print the transcript in this '
                                        'format when done.')
    parser_transcribe.set_defaults(func=cmd_transcribe)

    parser_list_devices = subparsers.add_parser(
        'list-devices', help='List local audio devices.')
    parser_list_devices.set_defaults(func=cmd_list_devices)

    return parser.parse_args(argv)


def exit(error):
    print("ERROR: %s" % error, file=sys.stderr)
    sys.exit(1)


def apply_args(settings, args):
    if args.mic_device_index is not None:
        settings.capture.mic_device_index = args.mic_device_index
    if args.system_device_index is not None:
        settings.capture.system_device_index = args.system_device_index
    if args.url:
        settings.recognizer.url = args.url
    if args.api_key:
        settings.recognizer.api_key = SecretStr(args.api_key)
    if args.language:
        settings.recognizer.language = args.language
    if args.save_dir:
        settings.transcript.save_directory = args.save_dir
    if args.prefer == 'none':
        settings.transcript.preferred_stream = None
    elif args.prefer:
        settings.transcript.preferred_stream = StreamId(args.prefer)
    return settings


def print_event(name, payload):
    if name == 'final-transcript':
        print('[%s] %s' % (payload['speaker'], payload['text']))
    elif name == 'transcript-retracted':
        print('(retracted [%s] %s)' % (payload['speaker'], payload['text']))
    elif name == 'persistence-error':
        print('WARNING: %s' % payload['error'], file=sys.stderr)


async def run_transcription(orch, duration, export_format):
    await orch.start_recording()
    try:
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        summary = await orch.stop_recording()
        if summary:
            print(json.dumps(summary, indent=2))
        if export_format:
            print(orch.export_session(export_format))


def cmd_transcribe(args):
    settings = apply_args(config.Settings(), args)
    if not settings.recognizer.api_key.get_secret_value():
        exit(error='You must specify a recognizer API key.')

    spec_args = dict(rate=args.rate, channels=args.channels)
    orch = orchestrator.create_orchestrator(
        settings,
        mic_spec=audio.SourceSpec(
            device_index=settings.capture.mic_device_index, **spec_args),
        system_spec=audio.SourceSpec(
            device_index=settings.capture.system_device_index, **spec_args),
    )
    orch.engine.register_event_handler(print_event)

    print('Beginning transcription. Press Ctrl+C to stop.')
    try:
        asyncio.run(run_transcription(orch, args.duration, args.export))
    except RecordingStartError as e:
        exit(error=e)
    except KeyboardInterrupt:
        pass


def cmd_list_devices(args):
    try:
        devices = audio.enumerate_devices()
    except DualscribeError as e:
        exit(error=e)
    for device in devices:
        print('[%2d] %-6s %s' % (device['id'], device['kind'],
                                 device['label']))


def main():
    args = parse_args(sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    if 'func' not in args:
        exit(error='No command given, see --help.')
    args.func(args)
