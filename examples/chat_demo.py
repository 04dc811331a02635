"""Minimal demonstration of the streaming delivery core against a local backend."""

import asyncio

from chat_core import create_chat_service


async def main() -> None:
    service = create_chat_service()
    await service.start()
    await service.monitor.refresh()
    conv = await service.create_conversation(system_prompt="Answer in one short paragraph.")
    question = "用一句话解释什么是离线消息队列"
    print("User:", question)
    sub = await service.coordinator.send_message(conv.id, question)
    printed = 0
    async for snapshot in sub:
        last = snapshot.messages[-1]
        if last.role == "assistant":
            print(last.text[printed:], end="", flush=True)
            printed = len(last.text)
        elif last.status == "queued":
            print("(backend offline, message queued:", service.monitor.current_status, ")")
    print()
    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
