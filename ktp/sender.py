"""Send a file over a KTP socket, one message per buffer-sized chunk."""

from __future__ import annotations

import os
import sys
import time

from ktp.api import ktp_socket
from ktp.protocol import MAX_MSG_SIZE, NoSpaceError
from ktp.service import KTPService

EOF_MARKER = b"#"
"""One-byte message that marks the end of a transfer."""

SOURCE_FILE = "file.txt"
"""File sent by the command."""

LINGER_SECONDS = 10
"""Time the command waits for final acknowledgements before closing."""


def _send_until_accepted(sock, data: bytes, address, poll_interval: float) -> int:
    while True:
        try:
            return sock.sendto(data, address)
        except NoSpaceError:
            print("Send buffer full, waiting for space...")
            time.sleep(poll_interval)


def send_file(sock, path, address, poll_interval=1.0) -> int:
    """Send the file at path to address, then the end marker.

    Waits poll_interval seconds whenever the send buffer is full.
    Returns the number of data messages sent, the end marker excluded.
    """
    count = 0
    with open(path, "rb") as source:
        for chunk in iter(lambda: source.read(MAX_MSG_SIZE), b""):
            sent = _send_until_accepted(sock, chunk, address, poll_interval)
            count += 1
            print(f"Sent {sent} bytes successfully! Packet #{count} complete.")
    _send_until_accepted(sock, EOF_MARKER, address, poll_interval)
    print("Sent EOF marker. File transfer complete!")
    return count


def _usage(prog: str) -> int:
    print(f"Usage: {prog} <src_ip> <src_port> <dest_ip> <dest_port>")
    return 1


def main(argv=None) -> int:
    """Send file.txt from src_ip:src_port to dest_ip:dest_port."""
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "ktp-send"
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 4:
        return _usage(prog)
    src_ip, src_port_text, dest_ip, dest_port_text = args
    try:
        src_port = int(src_port_text)
        dest_port = int(dest_port_text)
    except ValueError:
        return _usage(prog)

    with KTPService() as service:
        try:
            sock = ktp_socket(service)
        except OSError as err:
            print(f"Error in socket creation: {err}", file=sys.stderr)
            return 1
        print(f"Socket created successfully with ID: {sock.index}")
        with sock:
            try:
                sock.bind(src_ip, src_port, dest_ip, dest_port)
            except OSError as err:
                print(f"Error in binding socket: {err}", file=sys.stderr)
                return 1
            print("Socket bound successfully")
            try:
                count = send_file(sock, SOURCE_FILE, (dest_ip, dest_port))
            except OSError as err:
                print(f"Error sending file: {err}", file=sys.stderr)
                return 1
            print(f"Total packets sent: {count}")
            print("Waiting for final acknowledgments...")
            time.sleep(LINGER_SECONDS)
        print("Socket closed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())