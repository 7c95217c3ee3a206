import argparse

import torch

from qbresidual.models.native import load_native_layers
from qbresidual.models.torch_backend import ConvStack, export_torchscript


def parse_args():
    parser = argparse.ArgumentParser(
        description="Export a native .npz residual model to ONNX (and optionally TorchScript)"
    )
    parser.add_argument("--model", required=True, help="Native .npz model")
    parser.add_argument("--output", default="qbresidual.onnx")
    parser.add_argument("--torchscript", default="", help="Also write a TorchScript .pt here")
    parser.add_argument("--height", type=int, default=720)
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("--opset", type=int, default=17)
    parser.add_argument("--fp16", action="store_true", help="Export an FP16 graph")
    parser.add_argument(
        "--static",
        action="store_true",
        help="Export fixed-shape ONNX (no dynamic axes)"
    )
    return parser.parse_args()


def main():
    args = parse_args()
    layers = load_native_layers(args.model)
    print(f"Native model loaded: {len(layers)} layers.")

    model = ConvStack(layers).eval()
    cin = layers[0].kernel.shape[2]
    dummy_input = torch.rand(1, cin, args.height, args.width)
    if args.fp16:
        model.half()
        dummy_input = dummy_input.half()

    export_kwargs = {
        "input_names": ["x"],
        "output_names": ["y"],
        "opset_version": args.opset,
    }
    if not args.static:
        export_kwargs["dynamic_axes"] = {
            "x": {2: "height", 3: "width"},
            "y": {2: "height", 3: "width"},
        }

    print("Exporting to ONNX...")
    torch.onnx.export(model, (dummy_input,), args.output, **export_kwargs)
    print(f"ONNX export complete: {args.output}")

    if args.torchscript:
        export_torchscript(layers, args.torchscript, height=args.height, width=args.width)
        print(f"TorchScript export complete: {args.torchscript}")


if __name__ == "__main__":
    main()
