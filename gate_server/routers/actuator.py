"""
Actuator Router
Gate controller ports, connection and commands
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..models import CommandRequest, ConnectRequest
from ..services.actuator_gateway import ActuatorGateway

router = APIRouter()


def _gateway(request: Request) -> ActuatorGateway:
    return request.app.state.actuator_gateway


@router.get("/ports")
async def list_ports(request: Request):
    """Serial ports available to the controller"""
    gateway = _gateway(request)
    ports = await gateway.list_devices()
    return {"ports": [p.model_dump() for p in ports], "mode": gateway.mode}


@router.get("/status")
async def get_status(request: Request):
    return _gateway(request).status()


@router.post("/connect")
async def connect(request: Request, body: ConnectRequest):
    gateway = _gateway(request)
    result = await gateway.connect(body.port, body.baud_rate)
    return {
        **result.model_dump(),
        "connected": gateway.connected,
        "port": gateway.session.state.path
    }


@router.post("/disconnect")
async def disconnect(request: Request):
    gateway = _gateway(request)
    result = await gateway.disconnect()
    return {**result.model_dump(), "connected": gateway.connected}


@router.post("/command")
async def send_command(request: Request, body: CommandRequest):
    """Send one command to the controller (connects first if needed)"""
    result = await _gateway(request).send_command(body.command)
    content = {**result.model_dump(), "command": body.command}
    if not result.success:
        return JSONResponse(status_code=400, content=content)
    return content


@router.get("/monitor")
async def get_monitor(request: Request, limit: int = 50):
    """Most recent controller reply lines"""
    lines = list(_gateway(request).monitor)
    return {"lines": lines[-limit:] if limit > 0 else []}
