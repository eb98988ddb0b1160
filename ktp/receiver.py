"""Receive a file over a KTP socket until the end marker arrives."""

from __future__ import annotations

import os
import sys
import time

from ktp.api import ktp_socket
from ktp.protocol import MAX_MSG_SIZE, NoMessageError
from ktp.sender import EOF_MARKER
from ktp.service import KTPService


def receive_file(sock, path, poll_interval=0.1) -> tuple[int, int]:
    """Write received messages to path until the end marker arrives.

    Polls every poll_interval seconds while no message is waiting.
    Returns (total bytes written, number of data messages).
    """
    total = 0
    count = 0
    with open(path, "wb") as target:
        while True:
            try:
                data, _ = sock.recvfrom(MAX_MSG_SIZE)
            except NoMessageError:
                time.sleep(poll_interval)
                continue
            if data == EOF_MARKER:
                break
            target.write(data)
            total += len(data)
            count += 1
    return total, count


def _usage(prog: str) -> int:
    print(f"Usage: {prog} <src_ip> <src_port> <dest_ip> <dest_port>")
    return 1


def main(argv=None) -> int:
    """Receive a file on src_ip:src_port into received_file_<src_port>.txt."""
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "ktp-recv"
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
            print(f"Socket creation failed: {err}", file=sys.stderr)
            return 1
        print(f"Socket created successfully with ID: {sock.index}")
        with sock:
            try:
                sock.bind(src_ip, src_port, dest_ip, dest_port)
            except OSError as err:
                print(f"Bind operation failed: {err}", file=sys.stderr)
                return 1
            print("Socket bound successfully")
            filename = f"received_file_{src_port}.txt"
            print(f"Output file '{filename}' created. Waiting for data...")
            try:
                total, count = receive_file(sock, filename)
            except OSError as err:
                print(f"Error receiving file: {err}", file=sys.stderr)
                return 1
            print(f"Received a total of {total} bytes in {count} packets")
        print("Socket closed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())