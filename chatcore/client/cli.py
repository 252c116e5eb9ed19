import asyncio
import base64
import mimetypes
import os
import re
import uuid

import grpc
import typer
from grpc import aio

from .stub import ChatStub
from .. import wire

app = typer.Typer(help="gRPC chat client")

RECALLED_TEXT = "This message was recalled"

HELP = ("Commands:\n"
        "  /search <query>\n"
        "  /profile [email]\n"
        "  /name <display name>\n"
        "  /avatar <path>\n"
        "  /dm <email> <message>\n"
        "  /file <email|#group_id> <path>\n"
        "  /history <email|#group_id>\n"
        "  /read <message_id>\n"
        "  /recall <message_id>\n"
        "  /react <message_id> <symbol>\n"
        "  /delete <message_id>\n"
        "  /forward <message_id> <email|#group_id>\n"
        "  /typing <email>\n"
        "  /create-group <name> [member_email ...]\n"
        "  /join-group <group_id>\n"
        "  /leave-group <group_id>\n"
        "  /list-groups\n"
        "  /group <group_id> <message>\n"
        "  /add-member <group_id> <email>\n"
        "  /role <group_id> <email> <admin|deputy|member>\n"
        "  /friend <email>\n"
        "  /accept <email>\n"
        "  /decline <email>\n"
        "  /unfriend <email>\n"
        "  /friends\n"
        "  /online\n"
        "  /call <user_id>\n"
        "  /answer <user_id> <yes|no>\n"
        "  /hangup <room_id>\n"
        "  /help")


def render_message(rec: dict) -> str:
    """One line for a message record as sent by the server."""
    if rec.get("recalled"):
        body = RECALLED_TEXT
    else:
        content = rec.get("content") or {}
        kind = content.get("type")
        if kind == "file":
            body = f"[file] {content.get('name') or content.get('url')} ({content.get('size')} bytes)"
        elif kind == "system":
            body = f"[{content.get('action')}] {content.get('text', '')}".strip()
        else:
            body = content.get("text", "")
    reactions = " ".join(r["symbol"] for r in rec.get("reactions", []))
    forwarded = " (forwarded)" if rec.get("forwarded_from") else ""
    read = " (read)" if rec.get("status") == "read" else ""
    line = f"{rec.get('message_id', '')[:8]} {rec.get('sender_id')}: {body}{forwarded}{read}"
    return f"{line} [{reactions}]" if reactions else line


def format_event(env: dict) -> str:
    """Render an incoming envelope for the terminal."""
    event = env.get("event")
    data = env.get("data") or {}
    if event == wire.NEW_MESSAGE:
        return f"[DM] {data.get('senderEmail')}: {render_message(data)}"
    if event == wire.NEW_GROUP_MESSAGE:
        return f"[GROUP {data.get('groupId')}] {render_message(data.get('message') or {})}"
    if event in (wire.MESSAGE_SENT, wire.GROUP_MESSAGE_SENT):
        return f"[ACK] {data.get('messageId')} sent"
    if event in (wire.MESSAGE_RECALLED, wire.RECALL_GROUP_MESSAGE):
        return f"[RECALL] {data.get('messageId')} was recalled"
    if event == wire.MESSAGE_REACTION:
        state = "reacted" if data.get("active") else "removed reaction"
        return f"[REACTION] {data.get('userId')} {state} {data.get('reaction')} on {data.get('messageId')}"
    if event == wire.MESSAGE_READ:
        return f"[READ] {data.get('readerEmail')} read {data.get('messageId')}"
    if event == wire.MESSAGE_DELETED:
        return f"[DELETE] {data.get('messageId')} deleted on another device"
    if event in (wire.TYPING_START, wire.TYPING_STOP):
        verb = "is typing..." if event == wire.TYPING_START else "stopped typing"
        return f"[TYPING] {data.get('senderEmail')} {verb}"
    if event == wire.FRIEND_STATUS:
        return f"[STATUS] {data.get('email')} is {'online' if data.get('online') else 'offline'}"
    if event == wire.INITIAL_FRIEND_STATUSES:
        statuses = data.get("statuses") or {}
        online = [uid for uid, is_on in statuses.items() if is_on]
        return f"[STATUS] {len(online)}/{len(statuses)} friends online"
    if event == wire.INCOMING_CALL:
        return f"[CALL] incoming call from {data.get('fromUserId')} (/answer {data.get('fromUserId')} yes|no)"
    if event in (wire.CALL_ACCEPTED, wire.CALL_DECLINED, wire.CALL_CANCELLED, wire.CALL_ENDED):
        return f"[CALL] {event} {data}"
    if event == wire.ERROR:
        return f"[error] {data.get('event')}: {data.get('message')}"
    if event == wire.AUTHENTICATED:
        return f"[connected] as {(data.get('user') or {}).get('email')}"
    return f"[IN] {event} {data}"


def parse_target(target: str, prefix: str = "") -> dict:
    """``#<group_id>`` names a group, anything else a user email."""
    if target.startswith("#"):
        return {f"{prefix}group_id": target[1:]}
    return {f"{prefix}receiver_email": target}


async def _login(stub: ChatStub, email: str, name: str, register: bool):
    if not register:
        try:
            resp = await stub.LoginUser({"email": email})
            if resp.get("success"):
                print(f"Logged in as {resp['user']['display_name']} ({resp['user']['user_id']})")
                return resp
            print(f"Login failed: {resp.get('error_message')}")
        except grpc.aio.AioRpcError as e:
            print(f"Error during login: {e.details()}")
        if input("Would you like to register as a new user? (y/n): ").lower() != 'y':
            return None

    if not name:
        name = input("Enter your display name: ").strip()
    try:
        resp = await stub.RegisterUser({"email": email, "display_name": name})
    except grpc.aio.AioRpcError as e:
        if e.code() == grpc.StatusCode.ALREADY_EXISTS:
            print(f"Error: {e.details()}")
        else:
            print(f"Error during registration: {e.details()}")
        return None
    print(f"Registered as {name} ({resp['user']['user_id']})")
    return resp


async def _run(email: str, name: str, host: str, port: int, register: bool = False):
    """Main client loop handling connection and chat operations.

    Args:
        email (str): Login email (will prompt if empty)
        name (str): Display name used when registering
        host (str): Chat server hostname
        port (int): Chat server port
        register (bool): True to register new user, False to try login first
    """
    chan = aio.insecure_channel(f"{host}:{port}")
    stub = ChatStub(chan)

    if not email:
        email = input("Enter your email: ").strip()
    session = await _login(stub, email, name, register)
    if not session:
        return
    stub.token = session["token"]

    async def call(method: str, request: dict):
        try:
            return await getattr(stub, method)(request)
        except grpc.aio.AioRpcError as e:
            print(f"[{method}] {e.code().name}: {e.details()}")
            return None

    async def outgoing():
        """Generate outgoing envelopes from user input.

        Commands that map to stream events are yielded; the rest are unary calls.
        """
        yield wire.envelope(wire.AUTHENTICATE, {"token": stub.token})
        yield wire.envelope(wire.USER_STATUS, {"online": True})

        loop = asyncio.get_event_loop()
        while True:
            line = (await loop.run_in_executor(None, input, "")).strip()
            if not line:
                continue

            if line in {"/help", "help"}:
                print(HELP)
                continue

            if line.startswith("/search "):
                resp = await call("SearchUsers", {"query": line[len("/search "):].strip()})
                if resp is not None:
                    for u in resp["users"] or []:
                        print(f"[search] {u['display_name']} <{u['email']}> ({u['user_id']})")
                    if not resp["users"]:
                        print("[search] No matches")
                continue

            m = re.match(r"^/profile(?:\s+(\S+))?$", line)
            if m:
                resp = await call("GetProfile", {"email": m.group(1)} if m.group(1) else {})
                if resp is not None:
                    u = resp["user"]
                    print(f"[profile] {u['display_name']} <{u['email']}> ({u['user_id']}) avatar={u['avatar']}")
                continue

            m = re.match(r"^/name\s+(.+)$", line)
            if m:
                resp = await call("UpdateProfile", {"display_name": m.group(1)})
                if resp is not None:
                    print(f"[profile] Display name is now {resp['user']['display_name']}")
                continue

            m = re.match(r"^/avatar\s+(.+)$", line)
            if m:
                path = os.path.expanduser(m.group(1))
                try:
                    with open(path, "rb") as f:
                        data = f.read()
                except OSError as e:
                    print(f"[avatar] {e}")
                    continue
                resp = await call("UpdateProfile", {
                    "avatar_b64": base64.b64encode(data).decode("ascii"),
                    "avatar_content_type": mimetypes.guess_type(path)[0] or "",
                    "avatar_filename": os.path.basename(path)})
                if resp is not None:
                    print(f"[profile] Avatar updated: {resp['user']['avatar']}")
                continue

            m = re.match(r"^/dm\s+(\S+)\s+(.+)$", line)
            if m:
                yield wire.envelope(wire.NEW_MESSAGE, {
                    "receiverEmail": m.group(1),
                    "message": {"message_id": uuid.uuid4().hex, "content": {"type": "text", "text": m.group(2)}},
                })
                continue

            m = re.match(r"^/group\s+#?(\S+)\s+(.+)$", line)
            if m:
                yield wire.envelope(wire.GROUP_MESSAGE, {
                    "groupId": m.group(1),
                    "message": {"message_id": uuid.uuid4().hex, "content": {"type": "text", "text": m.group(2)}},
                })
                continue

            m = re.match(r"^/file\s+(\S+)\s+(.+)$", line)
            if m:
                path = os.path.expanduser(m.group(2))
                try:
                    with open(path, "rb") as f:
                        data = f.read()
                except OSError as e:
                    print(f"[file] {e}")
                    continue
                content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
                name = os.path.basename(path)
                uploaded = await call("UploadFile", {"data_b64": base64.b64encode(data).decode("ascii"),
                                                     "content_type": content_type, "filename": name})
                if uploaded is None:
                    continue
                request = parse_target(m.group(1))
                request["message"] = {"message_id": uuid.uuid4().hex,
                                      "content": {"type": "file", "url": uploaded["url"],
                                                  "mime_type": content_type, "size": uploaded["size"],
                                                  "name": name}}
                if await call("SendMessage", request) is not None:
                    print(f"[file] sent {name}")
                continue

            m = re.match(r"^/history\s+(\S+)$", line)
            if m:
                resp = await call("ListMessages", parse_target(m.group(1)))
                if resp is not None:
                    for rec in resp["messages"]:
                        print(render_message(rec))
                continue

            m = re.match(r"^/read\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.MESSAGE_READ, {"messageId": m.group(1)})
                continue

            m = re.match(r"^/recall\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.MESSAGE_RECALLED, {"messageId": m.group(1)})
                continue

            m = re.match(r"^/react\s+(\S+)\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.MESSAGE_REACTION, {"messageId": m.group(1), "reaction": m.group(2)})
                continue

            m = re.match(r"^/delete\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.MESSAGE_DELETED, {"messageId": m.group(1)})
                continue

            m = re.match(r"^/forward\s+(\S+)\s+(\S+)$", line)
            if m:
                request = parse_target(m.group(2), prefix="target_")
                request["message_id"] = m.group(1)
                resp = await call("ForwardMessage", request)
                if resp is not None:
                    print(f"[forward] sent as {resp['message']['message_id']}")
                continue

            m = re.match(r"^/typing\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.TYPING_START, {"receiverEmail": m.group(1)})
                continue

            m = re.match(r"^/create-group\s+(\S+)((?:\s+\S+)*)$", line)
            if m:
                member_ids = []
                for member_email in m.group(2).split():
                    found = await call("SearchUsers", {"query": member_email})
                    match = [u for u in (found or {}).get("users", []) if u["email"] == member_email.lower()]
                    if match:
                        member_ids.append(match[0]["user_id"])
                    else:
                        print(f"[warn] No user {member_email}")
                resp = await call("CreateGroup", {"name": m.group(1), "member_ids": member_ids})
                if resp is not None:
                    group_id = resp["group"]["group_id"]
                    print(f"[group] Created group {m.group(1)} ({group_id})")
                    yield wire.envelope(wire.JOIN_GROUP, {"groupId": group_id})
                continue

            m = re.match(r"^/join-group\s+#?(\S+)$", line)
            if m:
                yield wire.envelope(wire.JOIN_GROUP, {"groupId": m.group(1)})
                continue

            m = re.match(r"^/leave-group\s+#?(\S+)$", line)
            if m:
                yield wire.envelope(wire.LEAVE_GROUP, {"groupId": m.group(1)})
                if await call("LeaveGroup", {"group_id": m.group(1)}) is not None:
                    print(f"[group] Left group {m.group(1)}")
                continue

            if line == "/list-groups":
                resp = await call("ListUserGroups", {})
                if resp is not None:
                    if not resp["groups"]:
                        print("[list-groups] No groups found")
                    for g in resp["groups"]:
                        print(f" - {g['name']} ({g['group_id']}) members={','.join(g['member_ids'])}")
                continue

            m = re.match(r"^/add-member\s+#?(\S+)\s+(\S+)$", line)
            if m:
                found = await call("SearchUsers", {"query": m.group(2)})
                match = [u for u in (found or {}).get("users", []) if u["email"] == m.group(2).lower()]
                if not match:
                    print("[warn] No user found")
                    continue
                if await call("AddMembers", {"group_id": m.group(1), "member_ids": [match[0]["user_id"]]}):
                    print(f"[group] Added {m.group(2)}")
                continue

            m = re.match(r"^/role\s+#?(\S+)\s+(\S+)\s+(admin|deputy|member)$", line)
            if m:
                found = await call("SearchUsers", {"query": m.group(2)})
                match = [u for u in (found or {}).get("users", []) if u["email"] == m.group(2).lower()]
                if not match:
                    print("[warn] No user found")
                    continue
                if await call("SetMemberRole", {"group_id": m.group(1), "member_id": match[0]["user_id"],
                                                "role": m.group(3)}):
                    print(f"[group] {m.group(2)} is now {m.group(3)}")
                continue

            m = re.match(r"^/(friend|accept|decline|unfriend)\s+(\S+)$", line)
            if m:
                action, other = m.group(1), {"email": m.group(2)}
                if action == "friend":
                    resp = await call("SendFriendRequest", other)
                elif action == "unfriend":
                    resp = await call("Unfriend", other)
                else:
                    resp = await call("RespondFriendRequest", dict(other, accept=action == "accept"))
                if resp is not None:
                    print(f"[friends] {action} {m.group(2)}: ok")
                continue

            if line in {"/friends", "/online"}:
                resp = await call("ListFriends", {})
                if resp is not None:
                    friends = resp["friends"]
                    if line == "/online":
                        friends = [f for f in friends if f["online"]]
                    for f in friends:
                        print(f" - {f['display_name']} <{f['email']}> ({f['user_id']})"
                              f"{' online' if f['online'] else ''}")
                    if line == "/friends":
                        for r in resp["requests"]["received"]:
                            print(f" ? request from {r['user_id']}")
                continue

            m = re.match(r"^/call\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.CALL_USER, {"toUserId": m.group(1)})
                continue

            m = re.match(r"^/answer\s+(\S+)\s+(yes|no)$", line)
            if m:
                event = wire.CALL_ACCEPTED if m.group(2) == "yes" else wire.CALL_DECLINED
                yield wire.envelope(event, {"fromUserId": m.group(1)})
                continue

            m = re.match(r"^/hangup\s+(\S+)$", line)
            if m:
                yield wire.envelope(wire.CALL_ENDED, {"roomId": m.group(1)})
                continue

            print('Type "/help" for commands.')

    async def reader(stream):
        async for env in stream:
            print(format_event(env))

    try:
        await reader(stub.OpenStream(outgoing()))
    except grpc.aio.AioRpcError as e:
        print(f"Stream closed: {e.code().name} {e.details()}")
    finally:
        await chan.close()


@app.command("run")
def run_cmd(
    email: str = "",
    name: str = "",
    host: str = "127.0.0.1",
    port: int = 50051,
    register: bool = False
):
    """
    Run the chat client.

    Args:
        email: Login email
        name: Display name used when registering
        host: Server hostname
        port: Server port
        register: If True, register as new user. If False, try to login first
    """
    asyncio.run(_run(email, name, host, port, register))


@app.command("serve")
def serve_cmd(host: str = typer.Option(None), port: int = typer.Option(None)):
    """Run the chat server (host/port override CHAT_HOST/CHAT_PORT)."""
    from ..server.main import serve
    asyncio.run(serve(host, port))


if __name__ == "__main__":
    app()
