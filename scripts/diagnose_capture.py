import argparse
import time

from callscribe.recorder import AudioCaptureEngine, find_device_info_by_name


def _describe_device(info: dict) -> None:
    print(f"Input device: {info.get('name', '')}")
    print(f"Index: {info.get('index', '')}")
    print(f"Host API: {info.get('hostapi', '')}")
    print(f"Max input channels: {info.get('max_input_channels', 0)}")
    print(f"Default sample rate: {info.get('default_samplerate', '')}")


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--device", help="Device name substring.")
    parser.add_argument("--seconds", type=float, default=6.0, help="Test duration.")
    parser.add_argument("--rate", type=int, default=16000, help="Sample rate.")
    parser.add_argument("--channels", type=int, default=1, help="Channels.")
    args = parser.parse_args()

    if args.device:
        info = find_device_info_by_name(args.device)
        if info is None:
            print(f"No input device matches {args.device!r}")
            return 1
        _describe_device(info)

    engine = AudioCaptureEngine(
        sample_rate_hz=args.rate,
        channels=args.channels,
        device_name=args.device,
    )
    peak = 0.0
    with engine.capture():
        deadline = time.monotonic() + args.seconds
        while time.monotonic() < deadline:
            time.sleep(0.5)
            level = engine.audio_level
            peak = max(peak, level)
            bar = "#" * int(level * 40)
            print(f"{engine.elapsed_seconds:6.1f}s  {level:0.2f}  {bar}")

    print(f"Mean level: {engine.mean_level:0.2f}  Peak level: {peak:0.2f}")
    print(f"Audio quality: {engine.audio_quality().value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
