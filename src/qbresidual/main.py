import argparse
import logging
import sys
import time

import cv2

from qbresidual.errors import QBResidualError
from qbresidual.frame import planes_to_bgr
from qbresidual.models import available_backends
from qbresidual.processor import MODES, ResidualFilter, ResidualOptions
from qbresidual.timer import FPSTimer
from qbresidual.video_source import VideoSource

VIDEO_PATH = "input.mp4"

logger = logging.getLogger("qbresidual")


def positive_int(text):
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"expected an integer >= 1, got {text}")
    return value


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Apply a DNN residual filter to a video")
    parser.add_argument("--video", default=VIDEO_PATH, help="Input video path")
    parser.add_argument(
        "--backend",
        default="native",
        help=f"DNN backend used for model execution (available: {', '.join(available_backends())})"
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Path to model file specifying network architecture and its parameters"
    )
    parser.add_argument("--mode", default="dnn", choices=list(MODES), help="Residual source")
    parser.add_argument(
        "--pix-fmt",
        default="yuv420p",
        choices=["yuv420p", "yuv444p", "gbrp"],
        help="Planar format the frames are converted to before filtering"
    )
    parser.add_argument(
        "--device",
        default="auto",
        choices=["auto", "cuda", "cpu"],
        help="PyTorch device selection (torch backend only)"
    )
    parser.add_argument(
        "--provider",
        default="auto",
        choices=["auto", "dml", "cuda", "rocm", "tensorrt", "coreml", "openvino", "cpu"],
        help="ONNX Runtime execution provider (onnx backend only)"
    )
    parser.add_argument("--seed", type=int, default=0, help="Seed for random mode")
    parser.add_argument("--prefetch", type=int, default=8, help="Reader prefetch queue size (0 disables)")
    parser.add_argument("--max-frames", type=int, default=0, help="Stop after N frames (0 = full video)")
    parser.add_argument("--timing-interval", type=positive_int, default=120, help="Frames between timing reports")
    parser.add_argument("--output", default="", help="Write the filtered video to this path")
    parser.add_argument("--no-display", action="store_true", help="Disable cv2.imshow")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="INFO prints one trace line per frame"
    )
    return parser.parse_args(argv)


def fourcc_for(path):
    return "MJPG" if path.lower().endswith(".avi") else "mp4v"


def timing_line(frames, filter_ms, render_ms, fps, inference_errors):
    return (
        f"[timing] frames={frames} "
        f"filter={filter_ms / frames:.2f}ms "
        f"render={render_ms / frames:.2f}ms "
        f"fps={fps:.2f} "
        f"infer_errors={inference_errors}"
    )


def run(args):
    options = ResidualOptions(
        backend=args.backend,
        model=args.model,
        mode=args.mode,
        seed=args.seed,
        device=args.device,
        provider=args.provider,
    )

    outputs = []
    source = VideoSource(args.video, pix_fmt=args.pix_fmt, prefetch=args.prefetch)
    writer = None
    timer = FPSTimer()
    frame_idx = 0
    filter_ms = 0.0
    render_ms = 0.0

    try:
        with ResidualFilter(options, sink=outputs.append) as residual:
            while True:
                ret, frame = source.read()
                if not ret:
                    break

                t0 = time.perf_counter()
                residual.filter_frame(frame)
                out = outputs.pop()
                t1 = time.perf_counter()

                image = planes_to_bgr(out)
                if args.output:
                    if writer is None:
                        writer = cv2.VideoWriter(
                            args.output,
                            cv2.VideoWriter_fourcc(*fourcc_for(args.output)),
                            source.fps,
                            (out.width, out.height),
                        )
                    writer.write(image)
                if not args.no_display:
                    cv2.imshow("qbresidual", image)
                    if cv2.waitKey(1) & 0xFF == 27:
                        break
                t2 = time.perf_counter()
                fps = timer.update()

                frame_idx += 1
                filter_ms += (t1 - t0) * 1000.0
                render_ms += (t2 - t1) * 1000.0
                if frame_idx % args.timing_interval == 0:
                    print(timing_line(frame_idx, filter_ms, render_ms, fps,
                                      residual.inference_errors))
                if args.max_frames > 0 and frame_idx >= args.max_frames:
                    break

            if frame_idx > 0 and frame_idx % args.timing_interval != 0:
                print(timing_line(frame_idx, filter_ms, render_ms, timer.fps,
                                  residual.inference_errors))
    finally:
        source.release()
        if writer is not None:
            writer.release()
        if not args.no_display:
            cv2.destroyAllWindows()

    logger.info("processed %d frames", frame_idx)
    return frame_idx


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        run(args)
    except QBResidualError as exc:
        print(f"qbresidual: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
