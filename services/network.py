import errno
import socket


def describe_bind_error(listener: str, port: int, port_setting: str, err: OSError) -> str:
    """Turn a listener bind failure into a message an operator can act on."""
    if err.errno == errno.EACCES:
        return (
            f"[{listener}] Cannot bind to port {port} (permission denied). "
            f"Try running with sudo or set {port_setting} to a port above 1024."
        )
    if err.errno == errno.EADDRINUSE:
        return (
            f"[{listener}] Port {port} already in use. "
            f"Set {port_setting} to another value in .env."
        )
    return f"[{listener}] Cannot listen on port {port}: {err.strerror or err}"


def bind_tcp_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock
