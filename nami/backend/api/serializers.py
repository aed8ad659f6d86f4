"""
api/serializers.py

Response models for the REST pull routes. Field names follow the
WebSocket snapshot wire shape (camelCase).
"""

from __future__ import annotations

from pydantic import BaseModel


class SocketResponse(BaseModel):
    protocol: str
    localAddr: str
    localPort: int
    remoteAddr: str
    remotePort: int
    state: str


class ConnectionCounts(BaseModel):
    tcp: int
    udp: int
    total: int


class ProcessResponse(BaseModel):
    pid: int
    name: str
    cmdline: str
    connections: ConnectionCounts
    sockets: list[SocketResponse]


class BandwidthRecordResponse(BaseModel):
    pid: int
    name: str
    user: str
    sentKBs: float
    receivedKBs: float


class InterfacesResponse(BaseModel):
    interfaces: list[str]


class ProcessesResponse(BaseModel):
    processes: list[ProcessResponse]


class BandwidthResponse(BaseModel):
    enabled: bool
    data: list[BandwidthRecordResponse]


class RefreshResponse(BaseModel):
    success: bool
    message: str


class ServerInfoResponse(BaseModel):
    message: str
    version: str
    clients: int
    bandwidthEnabled: bool
    endpoints: dict[str, str]
