import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .config import ManagerOptions
from .logging_utility import logger
from .vpn.exceptions import ConcurrencyError, ValidationError, VPNError
from .vpn.manager import VPNManager
from .vpn.models import Credentials


vpn_manager = VPNManager(ManagerOptions.from_config_file())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down, disconnecting VPN")
    try:
        await vpn_manager.disconnect()
    except Exception as e:
        logger.error(f"Error during VPN cleanup: {str(e)}")
    finally:
        vpn_manager.cleanup()


app = FastAPI(title="tunnelctl", lifespan=lifespan)


class CredentialsRequest(BaseModel):
    protocol: str
    payload: str
    uid: str


@app.get("/device")
async def check_device():
    """Whether a device token has been saved"""
    return {"has_token": vpn_manager.check_has_saved_credential_token()}


@app.post("/vpn/connect")
async def connect(credentials: CredentialsRequest):
    """Establish the tunnel with server credentials"""
    try:
        await vpn_manager.connect(Credentials(**credentials.model_dump()))
        return {"status": "success", "connected": True}
    except ConcurrencyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except VPNError as e:
        logger.error(f"VPN connect error: {str(e)}")
        raise HTTPException(status_code=502, detail={
            "message": str(e),
            "kind": type(e).__name__,
            "stage": e.stage.name if e.stage else None,
        })
    except Exception as e:
        logger.error(f"Unexpected VPN connect error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to connect VPN")


@app.post("/vpn/disconnect")
async def disconnect():
    """Tear the tunnel down"""
    try:
        success = await vpn_manager.disconnect()
        return {"status": "success" if success else "partial"}
    except Exception as e:
        logger.error(f"VPN disconnect error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to disconnect VPN")


@app.get("/vpn/status")
async def get_status():
    return {"status": vpn_manager.get_status().value}


@app.websocket("/vpn/events")
async def status_events(websocket: WebSocket):
    """Push every status transition to the client"""
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = vpn_manager.subscribe(queue.put_nowait)

    async def forward():
        while True:
            status = await queue.get()
            await websocket.send_json({"status": status.value})

    sender = None
    try:
        await websocket.send_json({"status": vpn_manager.get_status().value})
        sender = asyncio.create_task(forward())
        # Client messages are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Status subscriber disconnected")
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
