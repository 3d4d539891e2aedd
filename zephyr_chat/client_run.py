import asyncio
import sys

from zephyr_chat import config
from zephyr_chat.client.client import ChatClient
from zephyr_chat.client.directory import RemoteKeyDirectory
from zephyr_chat.client.session import ChatSessionController
from zephyr_chat.crypto.keys import KeyStore
from zephyr_chat.crypto.session_keys import SessionKeyManager


def build_session(client: ChatClient) -> ChatSessionController:
    keys = SessionKeyManager(KeyStore(client.user_id), RemoteKeyDirectory(client))
    return ChatSessionController(keys, client)


def _show(message):
    where = f"#{message.group_id}" if message.group_id else message.sender_id
    lock = "🔒" if message.is_encrypted else ""
    print(f"\n[{where}] {lock}{message.text}")
    print("> ", end='', flush=True)


async def main(user_id: str, url: str = config.SERVER_URL):
    client = ChatClient(user_id, url)
    await client.connect()
    session = build_session(client)
    session.on_message.append(_show)
    session.on_group_message.append(_show)
    session.on_warning.append(lambda peer, text: print(f"\n⚠️  {peer}: {text}"))

    print("Команды: /chat <user> - личный чат, /group <id> - группа, /new <name> - создать группу,")
    print("         /history, /online, /msg <text> (или просто текст), exit")
    current_peer = None
    current_group = None

    while True:
        cmd = await asyncio.get_event_loop().run_in_executor(None, input, "> ")
        if cmd.startswith("/chat "):
            current_peer, current_group = cmd.split()[1], None
            print(f"Текущий чат: {current_peer}")
        elif cmd.startswith("/group "):
            current_peer, current_group = None, cmd.split()[1]
            print(f"Текущая группа: {current_group}")
        elif cmd.startswith("/new "):
            group = await client.request("createGroup", {"name": cmd[5:].strip()})
            current_peer, current_group = None, group["id"]
            print(f"Группа создана: {group['id']}")
        elif cmd == "/history":
            if current_peer:
                history = await session.load_history(current_peer)
            elif current_group:
                history = await session.load_group_history(current_group)
            else:
                history = []
            for message in history:
                print(f"  {message.sender_id}: {message.text}")
        elif cmd == "/online":
            print("Онлайн:", ", ".join(client.online_users) or "-")
        elif cmd == "exit":
            break
        elif cmd:
            text = cmd[5:] if cmd.startswith("/msg ") else cmd
            if current_peer:
                await session.send(current_peer, text)
            elif current_group:
                await session.send_group(current_group, text)
            else:
                print("Сначала выберите чат: /chat <user>")
    await session.logout()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python -m zephyr_chat.client_run <user_id> [ws://host:port]")
        sys.exit(2)
    config.setup_logging("WARNING")
    try:
        asyncio.run(main(*sys.argv[1:3]))
    except KeyboardInterrupt:
        print("\nВыход")
