import asyncio
from zephyr_chat import config
from zephyr_chat.server.server import ChatServer


def main():
    config.setup_logging()
    server = ChatServer()
    print("🚀 Сервер запущен. Поддержка: личные чаты (E2EE), группы, онлайн и typing")
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("\nОстановлен")


if __name__ == "__main__":
    main()
