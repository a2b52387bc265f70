"""
Mock Vehicle Data Gateway for Local Development
===============================================
A lightweight server that mimics the Lambda gateway in front of the vehicle
data provider. Point the backend at it to exercise caching, retries and
stale fallbacks without paying for provider calls.

Usage:
    python server.py [--port 8002] [--delay 0.2] [--mode success]

Endpoints:
    POST /              - Vehicle lookup {service, vehicleId, chassis?, engine_no?}
    GET  /health        - Health check
    POST /mock/mode     - Switch behaviour (success, error, timeout, http500, text, processing)
    POST /mock/envelope - Switch envelope style (flagged, lambda, container, bare)
    POST /mock/set-delay
    GET  /mock/config
"""

import argparse
import asyncio
import hashlib
import json
import uuid
from datetime import date, timedelta
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

app = FastAPI(
    title="Mock Vehicle Data Gateway",
    description="Mock Lambda gateway for RC / FASTag / Challan lookups",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MODES = ("success", "error", "timeout", "http500", "text", "processing")
ENVELOPES = ("flagged", "lambda", "container", "bare")


class Config:
    response_delay: float = 0.2
    mode: str = "success"
    envelope: str = "flagged"
    timeout_seconds: float = 60.0  # how long "timeout" mode stalls
    webhook_url: Optional[str] = None
    webhook_token: Optional[str] = None
    proxy_token: Optional[str] = None  # required x-proxy-token when set
    calls: int = 0

config = Config()


class LookupRequest(BaseModel):
    service: str
    vehicleId: str
    chassis: Optional[str] = None
    engine_no: Optional[str] = None


# ============================================
# Canned provider payloads
# ============================================

def _seed(vehicle_id: str) -> int:
    return int(hashlib.sha256(vehicle_id.encode()).hexdigest()[:8], 16)


def rc_payload(vehicle_id: str) -> Dict[str, Any]:
    seed = _seed(vehicle_id)
    registered = date(2015 + seed % 8, 1 + seed % 12, 1 + seed % 28)
    return {
        "license_plate": vehicle_id,
        "owner_name": ["RAVI KUMAR", "ANITA SHARMA", "SURESH REDDY"][seed % 3],
        "brand_name": ["TATA MOTORS", "ASHOK LEYLAND", "MAHINDRA"][seed % 3],
        "brand_model": ["SIGNA 4825.TK", "ECOMET 1615", "BLAZO X 35"][seed % 3],
        "manufacturing_year": str(registered.year),
        "fuel_type": "DIESEL",
        "class": "Goods Carrier",
        "registration_date": registered.strftime("%d/%m/%Y"),
        "registering_authority": "RTO BANGALORE CENTRAL",
        "chassis_number": f"MAT{seed % 10 ** 9:09d}XYZ",
        "engine_number": f"ENG{seed % 10 ** 7:07d}",
        "insurance_expiry": (date.today() + timedelta(days=seed % 365)).strftime("%d-%m-%Y"),
        "pucc_upto": (date.today() + timedelta(days=seed % 180)).strftime("%d/%m/%Y"),
        "fitness_upto": (date.today() + timedelta(days=seed % 720)).strftime("%d/%m/%Y"),
        "permanent_address": "12, INDUSTRIAL AREA, PEENYA, BENGALURU",
        "financer": "HDFC BANK" if seed % 2 else None,
        "is_financed": bool(seed % 2),
    }


def fastag_payload(vehicle_id: str) -> Dict[str, Any]:
    seed = _seed(vehicle_id)
    return {
        "vehicle_number": vehicle_id,
        "tag_id": f"34161FA820{seed % 10 ** 14:014d}",
        "tag_status": "ACTIVE",
        "balance": round((seed % 500000) / 100, 2),
        "bank_name": ["ICICI BANK", "AXIS BANK", "PAYTM PAYMENTS BANK"][seed % 3],
        "vehicle_class": "VC10",
        "linked": True,
    }


def challans_payload(vehicle_id: str) -> Dict[str, Any]:
    seed = _seed(vehicle_id)
    challans = []
    for i in range(seed % 4):
        challans.append({
            "challan_no": f"KA{seed % 10 ** 6:06d}{i}",
            "challan_date": (date.today() - timedelta(days=30 * (i + 1))).strftime("%d-%m-%Y"),
            "amount": [500, 1000, 2000][i % 3],
            "challan_status": "Pending" if i % 2 == 0 else "Paid",
            "offence": ["Over speeding", "No parking", "Signal jump"][i % 3],
            "location": "MG ROAD, BENGALURU",
            "state": "KA",
        })
    return {"vehicle_number": vehicle_id, "challans": challans, "total_challans": len(challans)}


PAYLOADS = {
    "rc": rc_payload,
    "fastag": fastag_payload,
    "challans": challans_payload,
}


def wrap(payload: Dict[str, Any], request_id: str) -> Dict[str, Any]:
    """Wrap a provider payload in the configured envelope style"""
    if config.envelope == "lambda":
        return {"statusCode": 200, "body": json.dumps({"status": "success", "request_id": request_id, "response": payload})}
    if config.envelope == "container":
        return {"request_id": request_id, "data": payload}
    if config.envelope == "bare":
        return payload
    return {"status": "success", "request_id": request_id, "response": payload}


async def deliver_webhook(request_id: str, service: str, vehicle_id: str) -> None:
    """Complete a 'processing' lookup through the backend webhook"""
    await asyncio.sleep(max(config.response_delay, 1.0))
    headers = {"x-webhook-token": config.webhook_token} if config.webhook_token else {}
    body = {
        "request_id": request_id,
        "event_type": "validation_completed",
        "data": {"response": PAYLOADS[service](vehicle_id)},
    }
    async with httpx.AsyncClient(timeout=10) as client:
        try:
            response = await client.post(config.webhook_url, json=body, headers=headers)
            print(f"[webhook] {request_id} -> {response.status_code}")
        except httpx.HTTPError as e:
            print(f"[webhook] {request_id} failed: {e}")


# ============================================
# API Endpoints
# ============================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "mock-vehicle-gateway"}


@app.post("/")
async def lookup(
    request: LookupRequest,
    x_proxy_token: Optional[str] = Header(None, alias="x-proxy-token"),
):
    """Vehicle lookup - mimics the Lambda gateway"""
    if config.proxy_token and x_proxy_token != config.proxy_token:
        raise HTTPException(status_code=403, detail="Invalid proxy token")

    service = request.service.lower()
    if service not in PAYLOADS:
        return JSONResponse(status_code=400, content={"success": False, "error": f"Unknown service '{service}'"})

    if service == "challans" and (not request.chassis or not request.engine_no):
        return JSONResponse(status_code=400, content={"success": False, "error": "chassis and engine_no are required"})

    config.calls += 1
    await asyncio.sleep(config.response_delay)
    request_id = str(uuid.uuid4())

    if config.mode == "timeout":
        await asyncio.sleep(config.timeout_seconds)
    if config.mode == "error":
        return {"status": "failed", "error": "Vehicle details not found"}
    if config.mode == "http500":
        return JSONResponse(status_code=500, content={"message": "Internal server error"})
    if config.mode == "text":
        return PlainTextResponse(f"Lambda response: {json.dumps(wrap(PAYLOADS[service](request.vehicleId), request_id))}")
    if config.mode == "processing":
        if config.webhook_url:
            asyncio.create_task(deliver_webhook(request_id, service, request.vehicleId))
        return {"status": "processing", "request_id": request_id, "message": "Verification queued"}

    return wrap(PAYLOADS[service](request.vehicleId), request_id)


@app.post("/mock/mode")
async def set_mode(mode: str):
    """Switch gateway behaviour."""
    if mode not in MODES:
        raise HTTPException(status_code=400, detail=f"mode must be one of {', '.join(MODES)}")
    config.mode = mode
    return {"status": "ok", "mode": mode}


@app.post("/mock/envelope")
async def set_envelope(envelope: str):
    """Switch the envelope style of successful responses."""
    if envelope not in ENVELOPES:
        raise HTTPException(status_code=400, detail=f"envelope must be one of {', '.join(ENVELOPES)}")
    config.envelope = envelope
    return {"status": "ok", "envelope": envelope}


@app.post("/mock/set-delay")
async def set_delay(delay: float):
    """Set the response delay (seconds)."""
    config.response_delay = delay
    return {"status": "ok", "delay": delay}


@app.get("/mock/config")
async def get_config():
    """Get current mock server configuration."""
    return {
        "response_delay": config.response_delay,
        "mode": config.mode,
        "envelope": config.envelope,
        "webhook_url": config.webhook_url,
        "calls": config.calls,
    }


# ============================================
# Main Entry Point
# ============================================

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mock Vehicle Data Gateway")
    parser.add_argument("--port", type=int, default=8002, help="Port to run the server on")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--delay", type=float, default=0.2, help="Delay before each response")
    parser.add_argument("--mode", choices=MODES, default="success", help="Initial behaviour")
    parser.add_argument("--envelope", choices=ENVELOPES, default="flagged", help="Envelope style")
    parser.add_argument("--webhook-url", type=str, default=None,
                        help="Backend webhook for 'processing' mode, e.g. http://localhost:8000/api/v1/verification/webhook")
    parser.add_argument("--webhook-token", type=str, default=None, help="Sent as x-webhook-token")
    parser.add_argument("--proxy-token", type=str, default=None, help="Require this x-proxy-token")

    args = parser.parse_args()
    config.response_delay = args.delay
    config.mode = args.mode
    config.envelope = args.envelope
    config.webhook_url = args.webhook_url
    config.webhook_token = args.webhook_token
    config.proxy_token = args.proxy_token

    print(f"""
============================================================
              Mock Vehicle Data Gateway
============================================================
  Running on: http://{args.host}:{args.port}
  Mode: {config.mode}   Envelope: {config.envelope}
  Health Check: http://localhost:{args.port}/health
------------------------------------------------------------
  To use with the backend, set:
  VEHICLE_GATEWAY_URL=http://localhost:{args.port}/
============================================================
    """)

    uvicorn.run(app, host=args.host, port=args.port)
