"""Generate a 3D world from a photo through a running SlabFlow API.

Usage:
  SLABFLOW_SESSION_TOKEN=... python scripts/generate_world.py kitchen.jpg --model "Marble 0.1-mini"
"""

import argparse
import asyncio
import base64
import mimetypes
import os
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


def _build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
  parser.add_argument("image", type=Path, help="Photo to turn into a 3D world.")
  parser.add_argument("--base-url", default=os.getenv("SLABFLOW_API_URL", "http://localhost:8080"))
  parser.add_argument("--model", default="Marble 0.1-mini", choices=["Marble 0.1-mini", "Marble 0.1-plus"])
  parser.add_argument("--room-type", default="kitchen", choices=["kitchen", "bathroom", "other"])
  parser.add_argument("--stone-name", default=None)
  parser.add_argument("--order-id", default=None)
  parser.add_argument("--scope", default=None, choices=["user", "tenant"])
  parser.add_argument("--idempotency-key", default=None)
  parser.add_argument("--interval", type=float, default=5.0)
  parser.add_argument("--max-attempts", type=int, default=120)
  return parser


def _encode_image(path: Path) -> str:
  content_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
  encoded = base64.b64encode(path.read_bytes()).decode("ascii")
  return f"data:{content_type};base64,{encoded}"


async def main(argv: list[str] | None = None) -> int:
  # Import after path setup so the script works when run directly.
  from app.client.poller import GenerationPoller, PollError

  args = _build_parser().parse_args(argv)
  token = os.getenv("SLABFLOW_SESSION_TOKEN")
  if not token:
    print("Error: SLABFLOW_SESSION_TOKEN is not set.")
    return 1
  if not args.image.is_file():
    print(f"Error: {args.image} is not a file.")
    return 1

  payload = {"image_base64": _encode_image(args.image), "model": args.model, "room_type": args.room_type}
  for key, value in (("stone_name", args.stone_name), ("order_id", args.order_id), ("billing_scope", args.scope), ("idempotency_key", args.idempotency_key)):
    if value:
      payload[key] = value

  def _report(view) -> None:
    print(f"[{view.state}] {view.progress}% (poll {view.poll_attempts})")

  async with GenerationPoller(args.base_url, session_token=token, interval_seconds=args.interval, max_attempts=args.max_attempts) as poller:
    try:
      view = await poller.run(payload, on_progress=_report)
    except PollError as exc:
      print(f"Error: {exc}")
      return 1

  if view.state != "succeeded" or view.asset is None:
    print(f"Generation {view.state}: {view.error}")
    return 1

  print(f"World: {view.asset.marble_url}")
  print(f"Splat: {view.asset.url} (backed up: {view.backed_up})")
  if view.balance is not None:
    print(f"Remaining balance: {view.balance:.2f}")
  return 0


if __name__ == "__main__":
  sys.exit(asyncio.run(main()))
