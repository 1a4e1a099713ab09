"""CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import replace
from typing import AsyncIterator

import numpy as np

from .audio_utils import read_wav_mono
from .config import Config, load_config
from .errors import CallScribeError
from .events import RecognitionMethodChanged, TranscriptionUpdate
from .logging_utils import add_console_handler, setup_logging
from .models import SummarizationMode
from .recorder import list_input_devices
from .renderer import render_call_note
from .services import Services, build_services
from .storage import ensure_structure


def _load(args) -> Config:
    if os.path.exists(args.config):
        cfg = load_config(args.config)
    else:
        cfg = Config()
    if args.base_dir:
        cfg.base_dir = args.base_dir
    if not cfg.base_dir:
        cfg.base_dir = os.getcwd()
    return cfg


def _init_logging(cfg: Config, verbose: bool) -> None:
    paths = ensure_structure(cfg.base_dir)
    level = logging.DEBUG if cfg.debug_logging else logging.INFO
    setup_logging(paths["logs"], level)
    if verbose:
        add_console_handler()


async def _record(services: Services, duration, counterpart) -> int:
    orchestrator = services.orchestrator

    def _print_event(event) -> None:
        if isinstance(event, TranscriptionUpdate) and event.text:
            marker = "final" if event.is_final else "partial"
            print(f"[{marker}] {event.text}")
        elif isinstance(event, RecognitionMethodChanged):
            print(f"Recognition switched to {event.current.value}: {event.reason}")

    services.events.subscribe(_print_event)
    if services.sync_worker is not None:
        services.sync_worker.start()
    try:
        session = await orchestrator.start_recording(counterpart=counterpart)
        print(f"Recording call {session.id}")
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.to_thread(input, "Press Enter to stop.\n")
        data = await orchestrator.stop_recording_and_save()
    finally:
        if services.sync_worker is not None:
            await services.sync_worker.stop()

    print(f"Saved {data.id} ({data.formatted_duration}, {data.summary.method.value})")
    print(data.summary.summary)
    for item in data.summary.action_items:
        print(f"  - {item}")
    return 0


async def _frames_from(samples: np.ndarray, blocksize: int) -> AsyncIterator[np.ndarray]:
    for start in range(0, samples.size, blocksize):
        yield samples[start : start + blocksize]


async def _transcribe(services: Services, path: str):
    samples, rate = read_wav_mono(path)
    final = None
    async for result in services.recognizer.recognize(
        _frames_from(samples, services.config.audio.blocksize), rate
    ):
        final = result
    return final


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="callscribe")
    parser.add_argument("--config", default="callscribe_config.yml", help="Config file.")
    parser.add_argument("--base-dir", help="Base storage directory.")
    parser.add_argument("--verbose", action="store_true", help="Log to the console.")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")
    devices_cmd.add_argument(
        "--detail",
        action="store_true",
        help="Show detailed device channel info.",
    )

    record_cmd = sub.add_parser("record")
    record_cmd.add_argument("--duration", type=float, help="Seconds. Omit for manual stop.")
    record_cmd.add_argument("--counterpart", help="Number or name of the other party.")

    history_cmd = sub.add_parser("history")
    history_cmd.add_argument("--limit", type=int, default=20)
    history_cmd.add_argument("--offset", type=int, default=0)

    show_cmd = sub.add_parser("show")
    show_cmd.add_argument("call_id")
    show_cmd.add_argument("--note", action="store_true", help="Render as Markdown.")

    delete_cmd = sub.add_parser("delete")
    delete_cmd.add_argument("call_id")

    sub.add_parser("sync")
    sub.add_parser("storage")

    summarize_cmd = sub.add_parser("summarize")
    summarize_cmd.add_argument("text_path", help="Transcript text file.")
    summarize_cmd.add_argument(
        "--mode", choices=[m.value for m in SummarizationMode], help="Override mode."
    )

    transcribe_cmd = sub.add_parser("transcribe")
    transcribe_cmd.add_argument("audio_path", help="16-bit PCM WAV file.")
    transcribe_cmd.add_argument("--out", help="Write the result to JSON.")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "devices":
        devices = list_input_devices()
        if args.match:
            devices = [
                d for d in devices if args.match.lower() in d.get("name", "").lower()
            ]
        for device in devices:
            name = device.get("name", "Unknown")
            index = device.get("index", "?")
            channels = device.get("max_input_channels", 0)
            line = f"[{index}] {name} (inputs: {channels})"
            if args.detail:
                extra = []
                if "default_samplerate" in device:
                    extra.append(f"rate={device.get('default_samplerate')}")
                if "hostapi" in device:
                    extra.append(f"hostapi={device.get('hostapi')}")
                if extra:
                    line = f"{line} [{', '.join(extra)}]"
            print(line)
        return 0

    try:
        cfg = _load(args)
        _init_logging(cfg, args.verbose)
        services = build_services(cfg)
        store = services.store

        if args.command == "record":
            return asyncio.run(_record(services, args.duration, args.counterpart))

        if args.command == "history":
            for record in store.list(limit=args.limit, offset=args.offset):
                synced = "synced" if record.synced else "pending"
                print(
                    f"{record.id}  {record.timestamp:%Y-%m-%d %H:%M}  "
                    f"{record.counterpart}  {record.summary_status.value}  {synced}"
                )
                print(f"    {record.summary_preview}")
            return 0

        if args.command == "show":
            data = store.load(args.call_id)
            if args.note:
                print(render_call_note(data))
            else:
                print(store.dump_record(args.call_id))
            return 0

        if args.command == "delete":
            store.delete(args.call_id)
            print(f"Deleted {args.call_id}")
            return 0

        if args.command == "sync":
            if services.sync_worker is None:
                print("Sync is disabled. Set sync.blob_dir in the config.")
                return 1
            report = asyncio.run(services.sync_worker.run_once())
            print(
                f"Uploaded: {len(report.uploaded)}  Deleted: {len(report.deleted)}  "
                f"Failed: {len(report.failed)}"
            )
            return 0 if not report.failed else 1

        if args.command == "storage":
            info = store.storage_info()
            last_sync = store.last_sync_time()
            print(f"Used: {info.used_bytes} bytes")
            print(f"Available: {info.available_bytes} bytes")
            print(f"Files: {info.file_count}")
            print(f"Pending sync: {info.pending_sync_count}")
            print(f"Last sync: {last_sync.isoformat() if last_sync else 'never'}")
            return 0

        if args.command == "summarize":
            with open(args.text_path, "r", encoding="utf-8") as handle:
                text = handle.read()
            summ_cfg = cfg.summarization
            if args.mode:
                summ_cfg = replace(summ_cfg, mode=SummarizationMode(args.mode))
            summary = asyncio.run(services.summarizer.summarize(text, summ_cfg))
            print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
            return 0

        if args.command == "transcribe":
            result = asyncio.run(_transcribe(services, args.audio_path))
            if result is None:
                print("No audio.")
                return 1
            if args.out:
                with open(args.out, "w", encoding="utf-8") as handle:
                    json.dump(result.to_dict(), handle, indent=2, ensure_ascii=False)
            print(f"Method: {result.method.value}  Confidence: {result.confidence:.2f}")
            print(result.text)
            return 0
    except CallScribeError as exc:
        logging.getLogger("callscribe").error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}")
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
