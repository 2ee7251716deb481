"""
CLASSCHAT TERMINAL CLIENT
=========================

PURPOSE:
A command-line client for the ClassChat API. Useful in class to show the raw
stream (tokens arriving one by one, then the meta line) without a browser.

USAGE:
    python chat_client.py

    Make sure the server is running first: python run.py

COMMANDS:
    /register EMAIL PASSWORD - Create an account
    /login EMAIL PASSWORD    - Log in; later turns are saved to your sessions
    /sessions                - List your saved sessions
    /open SESSION_ID         - Continue a saved session
    /history                 - Show the current conversation
    /new                     - Start a new conversation
    /quit or /exit           - Exit

HOW IT WORKS:
1. Every message is appended to the local conversation (which starts with the
   default system prompt) and the whole conversation is posted to /api/chat.
2. The reply is read line by line from the text/event-stream response and
   printed as it arrives.
3. When logged in, a session id is sent along so the server stores the turn.
"""

import json
from uuid import uuid4

import requests


# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
BASE_URL = "http://localhost:8000"
TOKEN = None
SESSION_ID = None
MESSAGES = []
CONFIG = {}


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "="*60)
    print("ClassChat - terminal client")
    print("="*60)
    print("\nCommands:")
    print("  /register EMAIL PASSWORD - Create an account")
    print("  /login EMAIL PASSWORD    - Log in (turns are saved)")
    print("  /sessions                - List saved sessions")
    print("  /open SESSION_ID         - Continue a saved session")
    print("  /history                 - See the conversation")
    print("  /new                     - Start a new conversation")
    print("  /quit                    - Exit")
    print("="*60 + "\n")


def get_user_input():
    try:
        return input("\nYou: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None


def auth_headers():
    return {"Authorization": f"Bearer {TOKEN}"} if TOKEN else {}


def error_text(response):
    """Best readable error from a failed response."""
    try:
        detail = response.json().get("detail")
        if isinstance(detail, str):
            return f"Error {response.status_code}: {detail}"
    except ValueError:
        pass
    return f"Error {response.status_code}: {response.text}"


# -----------------------------------------------------------------------------
# API CALLS
# -----------------------------------------------------------------------------

def load_defaults():
    """Fetch default model config and system prompt; start a fresh conversation."""
    global MESSAGES, CONFIG, SESSION_ID
    response = requests.get(f"{BASE_URL}/api/models", timeout=10)
    response.raise_for_status()
    data = response.json()
    CONFIG = data["defaults"]
    MESSAGES = [{"role": "system", "content": data["systemPrompt"]}]
    SESSION_ID = str(uuid4())


def register(email, password):
    response = requests.post(
        f"{BASE_URL}/api/auth/register",
        json={"email": email, "password": password},
        timeout=10,
    )
    return "Registered. Now /login." if response.status_code == 201 else error_text(response)


def login(email, password):
    global TOKEN
    response = requests.post(
        f"{BASE_URL}/api/auth/login",
        json={"email": email, "password": password},
        timeout=10,
    )
    if response.status_code != 200:
        return error_text(response)
    TOKEN = response.json()["accessToken"]
    return f"Logged in as {email}. Turns in this conversation are saved as {SESSION_ID}."


def list_sessions():
    response = requests.get(f"{BASE_URL}/api/sessions", headers=auth_headers(), timeout=10)
    if response.status_code != 200:
        return error_text(response)
    data = response.json()
    if not data["items"]:
        return "No saved sessions"
    lines = [f"\nSessions (page {data['page']}/{data['totalPages']}, {data['total']} total):"]
    for item in data["items"]:
        lines.append(f"  {item['sessionId']}  {item['updatedAt'][:19]}  {item['title']}")
    return "\n".join(lines)


def open_session(session_id):
    global SESSION_ID, MESSAGES, CONFIG
    response = requests.get(f"{BASE_URL}/api/sessions/{session_id}", headers=auth_headers(), timeout=10)
    if response.status_code != 200:
        return error_text(response)
    data = response.json()
    SESSION_ID = data["sessionId"]
    MESSAGES = data["messages"]
    CONFIG = {
        "model": data["model"],
        "temperature": data.get("temperature"),
        "topP": data.get("topP"),
        "maxTokens": data.get("maxTokens"),
    }
    return f"Opened '{data['title']}' ({len(MESSAGES)} messages)"


def send_message(message):
    """
    Post the conversation to /api/chat and print tokens as they stream in.
    Returns the assembled reply, or None when the request failed.
    """
    MESSAGES.append({"role": "user", "content": message})
    body = {**{k: v for k, v in CONFIG.items() if v is not None}, "messages": MESSAGES}
    if TOKEN:
        body["sessionId"] = SESSION_ID

    try:
        with requests.post(
            f"{BASE_URL}/api/chat",
            json=body,
            headers=auth_headers(),
            stream=True,
            timeout=60,
        ) as response:
            if response.status_code != 200:
                print(error_text(response))
                return None

            parts = []
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                payload = line[len("data: "):]
                if payload == "[DONE]":
                    break
                envelope = json.loads(payload)
                if envelope["type"] == "token":
                    parts.append(envelope["data"])
                    print(envelope["data"], end="", flush=True)
                elif envelope["type"] == "meta":
                    meta = envelope["data"]
                    print(f"\n   [{meta['tokenCount']} chunks, {meta['elapsedMs']} ms]")
                elif envelope["type"] == "error":
                    print(f"\n   [stream error: {envelope['data']}]")
                    return None

            reply = "".join(parts)
            MESSAGES.append({"role": "assistant", "content": reply})
            return reply

    except requests.exceptions.ConnectionError:
        print("Cannot connect to backend. Start it with: python run.py")
    except requests.exceptions.Timeout:
        print("Request timed out.")
    return None


def format_history():
    shown = [m for m in MESSAGES if m["role"] != "system"]
    if not shown:
        return "No messages in this conversation"
    output = f"\nConversation ({len(shown)} messages):\n" + "-" * 60 + "\n"
    for i, msg in enumerate(shown, 1):
        role = "You" if msg["role"] == "user" else "Assistant"
        output += f"{i}. {role}: {msg['content']}\n"
    return output + "-" * 60


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    print_header()
    try:
        load_defaults()
    except requests.exceptions.RequestException as e:
        print(f"Cannot reach {BASE_URL}: {e}")
        return
    print(f"Model: {CONFIG['model']}  temperature={CONFIG['temperature']}  topP={CONFIG['topP']}")

    while True:
        user_input = get_user_input()
        if user_input is None or user_input in ["/quit", "/exit"]:
            print("\nGoodbye!")
            break
        if not user_input:
            continue

        command, *args = user_input.split()
        if command == "/register" and len(args) == 2:
            print(register(*args))
        elif command == "/login" and len(args) == 2:
            print(login(*args))
        elif command == "/sessions":
            print(list_sessions())
        elif command == "/open" and len(args) == 1:
            print(open_session(args[0]))
        elif command == "/history":
            print(format_history())
        elif command == "/new":
            load_defaults()
            print("New conversation started.")
        elif command.startswith("/"):
            print(f"Unknown command or wrong arguments: {user_input}")
        else:
            print("Assistant: ", end="", flush=True)
            if send_message(user_input) is None:
                # Keep the local transcript in step with what the server saw succeed.
                MESSAGES.pop()


if __name__ == "__main__":
    main()
