"""KTP: reliable, flow-controlled message transport over UDP, with a service, client sockets and file transfer programs."""

__version__ = "0.1.0"