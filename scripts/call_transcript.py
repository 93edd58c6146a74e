#!/usr/bin/env python3
"""Print the timestamped transcript of a follow-up call from its log output.

Reads TRANSCRIPT_DUMP lines written by the post-call handler, either from a
log file or from stdin.

Usage:
    python scripts/call_transcript.py carecall.log             # last call, human-readable
    python scripts/call_transcript.py carecall.log --raw       # last call, raw JSON
    python scripts/call_transcript.py --call-id 3f2a... < log  # specific call
    python scripts/call_transcript.py log --gap-threshold 3    # custom gap threshold
"""

import argparse
import json
import sys

_SPEAKERS = {
    "assistant": "Agent",
    "user": "Patient",
}


def parse_transcript_lines(lines: list[str], call_id: str | None = None) -> list[dict]:
    """Parse TRANSCRIPT_DUMP lines from log output into transcript dicts.

    Handles multi-chunk reassembly. Returns list of complete transcripts
    (most recent last). If call_id is specified, filters to that call only.
    """
    chunk_groups: dict[int, dict[int, str]] = {}
    group_counter = 0

    for line in lines:
        if "TRANSCRIPT_DUMP|" not in line:
            continue

        dump_part = line[line.index("TRANSCRIPT_DUMP|"):]
        parts = dump_part.split("|", 2)
        if len(parts) < 3:
            continue

        try:
            chunk_num, _total = (int(n) for n in parts[1].split("/"))
        except ValueError:
            continue

        if chunk_num == 1:
            group_counter += 1
        chunk_groups.setdefault(group_counter, {})[chunk_num] = parts[2].strip()

    transcripts = []
    for group_id in sorted(chunk_groups):
        chunks = chunk_groups[group_id]
        try:
            first = json.loads(chunks.get(1, ""))
        except json.JSONDecodeError:
            continue

        if call_id and first.get("call_id") != call_id:
            continue

        all_entries = list(first.get("entries", []))
        for i in sorted(chunks):
            if i == 1:
                continue
            try:
                all_entries.extend(json.loads(chunks[i]).get("entries", []))
            except json.JSONDecodeError:
                continue

        first["entries"] = all_entries
        transcripts.append(first)

    return transcripts


def format_transcript(transcript: dict, gap_threshold: float = 2.0) -> str:
    """Format a transcript dict into human-readable output with gap annotations."""
    call_id = transcript.get("call_id", "unknown")
    status = transcript.get("final_status", "unknown")
    duration = transcript.get("duration_s")

    header = f"Call {call_id} | {status}"
    if duration is not None:
        header += f" | {duration}s"
    lines = [header, "═" * 55, ""]

    entries = transcript.get("entries", [])
    prev_t = None

    for entry in entries:
        t = entry.get("t", 0.0)
        role = entry.get("role", "")
        content = entry.get("content", "")

        if prev_t is not None:
            gap = t - prev_t
            if gap >= gap_threshold:
                if gap >= 5.0:
                    lines.append(f"      ┆ +{gap:.1f}s ⚠ SLOW")
                else:
                    lines.append(f"      ┆ +{gap:.1f}s")

        speaker = _SPEAKERS.get(role)
        if speaker:
            lines.append(f"{t:5.1f}s {speaker}: {content}")
        else:
            lines.append(f"{t:5.1f}s • {content}")

        prev_t = t

    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Print the transcript of a follow-up call from its logs")
    parser.add_argument("logfile", nargs="?", default="-", help="Log file to read (default: stdin)")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON")
    parser.add_argument("--call-id", type=str, default=None, help="Filter by specific call id")
    parser.add_argument("--gap-threshold", type=float, default=2.0, help="Gap threshold in seconds (default: 2.0)")
    args = parser.parse_args(argv)

    if args.logfile == "-":
        lines = sys.stdin.read().splitlines()
    else:
        try:
            with open(args.logfile, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except OSError as e:
            print(f"Error: cannot read {args.logfile}: {e}", file=sys.stderr)
            return 1

    transcripts = parse_transcript_lines(lines, call_id=args.call_id)
    if not transcripts:
        print("No call transcripts found in the log.", file=sys.stderr)
        return 1

    transcript = transcripts[-1]
    if args.raw:
        print(json.dumps(transcript, indent=2))
    else:
        print(format_transcript(transcript, gap_threshold=args.gap_threshold))
    return 0


if __name__ == "__main__":
    sys.exit(main())
