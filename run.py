#!/usr/bin/env python3
"""
Shader Studio audio - headless runner

Drives the audio engine at a fixed frame rate the way a render loop would,
printing beats, BPM changes and band values.

    python run.py song.wav --seconds 30
    python run.py --mic --fps 60
    python run.py --list-devices
"""

import argparse
import asyncio
import cProfile
import sys
import time
from typing import Awaitable, Callable, Optional

from audio_errors import AudioEngineError
from config_persistence import load_config
from logging_utils import configure_logging, log_event


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Shader Studio audio engine headless")
    parser.add_argument("file", nargs="?", help="Audio file to play and analyse")
    parser.add_argument("--mic", action="store_true", help="Analyse the default microphone instead of a file")
    parser.add_argument("--fps", type=float, default=60.0, help="Host frame rate driving update() (default: 60)")
    parser.add_argument("--seconds", type=float, default=None,
                        help="Stop after this many seconds (default: until the file ends)")
    parser.add_argument("--list-devices", action="store_true", help="List audio devices and exit")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument("--report-dir", default=None, help="Write session level reports into this directory")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    return parser


async def run_host_loop(
    engine,
    fps: float,
    seconds: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.perf_counter,
) -> int:
    """Call engine.update() every 1/fps seconds. Returns the number of frames run.

    Ends after *seconds*, or, without a limit, once a file stops playing.
    """
    frame_s = 1.0 / max(1.0, fps)
    started = clock()
    frames = 0
    while True:
        engine.update()
        frames += 1
        if seconds is not None and clock() - started >= seconds:
            break
        if seconds is None and not engine.is_live and not engine.is_playing:
            break
        await sleep(frame_s)
    return frames


async def run_engine(args) -> int:
    from audio_engine import AudioEngine

    config = load_config()
    if args.log_level:
        config.log_level = args.log_level
    engine = AudioEngine(config=config, report_dir=args.report_dir)

    engine.on_beat = lambda: print(f"beat  bass={engine.values['bass']:.3f}", flush=True)
    engine.on_bpm_update = lambda bpm: print(f"bpm   {bpm}", flush=True)
    engine.on_ended = lambda: print("ended", flush=True)

    frames = 0
    try:
        if args.mic:
            await engine.start_mic()
        else:
            await engine.load_file(args.file)
            engine.play()
        frames = await run_host_loop(engine, args.fps, args.seconds)
    except AudioEngineError as e:
        log_event("ERROR", "Run", "Audio source failed", error=e)
        return 1
    finally:
        engine.dispose()

    log_event("INFO", "Run", "Finished", frames=frames, bpm=engine.bpm)
    return 0


def list_devices() -> int:
    from audio_backend import SoundDeviceBackend

    try:
        devices = SoundDeviceBackend().list_devices()
    except AudioEngineError as e:
        log_event("ERROR", "Run", "Could not list devices", error=e)
        return 1
    for dev in devices:
        print(f"{dev['index']:3d}  in={dev['max_input_channels']:2d} out={dev['max_output_channels']:2d}  "
              f"{dev['default_samplerate']:.0f} Hz  {dev['name']}")
    return 0


def run_app(args) -> int:
    if args.list_devices:
        return list_devices()
    return asyncio.run(run_engine(args))


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.list_devices and not args.mic and not args.file:
        parser.error("give an audio file, --mic or --list-devices")

    configure_logging(args.log_level or "INFO")

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_app(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_app(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
