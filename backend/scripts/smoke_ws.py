"""Manual smoke test against a running server.

Opens two WebSocket connections, joins both to the same room and checks that
a text sent by the first arrives at the second only.

    python backend/scripts/smoke_ws.py --url ws://localhost:5000/ws --room QQ11RR
"""
import argparse
import asyncio
import json

import websockets


async def recv_type(ws, expected: str) -> dict:
    while True:
        msg = json.loads(await ws.recv())
        if msg["type"] == expected:
            return msg


async def run(url: str, room: str) -> None:
    async with websockets.connect(url) as ws1, websockets.connect(url) as ws2:
        conn1 = (await recv_type(ws1, "connected"))["data"]["connectionId"]
        conn2 = (await recv_type(ws2, "connected"))["data"]["connectionId"]
        print(f"Connected: {conn1}, {conn2}")

        await ws1.send(json.dumps({"type": "join-room", "roomCode": room}))
        print(f"ws1 members: {(await recv_type(ws1, 'users-in-room'))['data']}")
        await ws2.send(json.dumps({"type": "join-room", "roomCode": room}))
        print(f"ws2 members: {(await recv_type(ws2, 'users-in-room'))['data']}")
        print(f"ws1 saw join: {(await recv_type(ws1, 'user-joined'))['data']}")

        await ws1.send(json.dumps({"type": "send-text", "roomCode": room, "text": "hello"}))
        received = await recv_type(ws2, "receive-text")
        print(f"ws2 received: {received['data']}")

        try:
            echo = await asyncio.wait_for(recv_type(ws1, "receive-text"), timeout=1.0)
            print(f"UNEXPECTED echo on ws1: {echo}")
        except asyncio.TimeoutError:
            print("ws1 got no echo (expected)")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", default="ws://localhost:5000/ws")
    parser.add_argument("--room", default="QQ11RR")
    args = parser.parse_args()
    asyncio.run(run(args.url, args.room))


if __name__ == "__main__":
    main()
