import json
from typing import Any, Dict, List

ALICE_TOKEN = "token-alice"
BOB_TOKEN = "token-bob"


def auth(token: str = ALICE_TOKEN) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def parse_sse(body: str) -> List[Dict[str, Any]]:
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data:"):
            events.append(json.loads(block[len("data:"):].strip()))
    return events


def user_message(text: str) -> Dict[str, Any]:
    return {"role": "user", "content": text, "parts": [{"type": "text", "text": text}]}
