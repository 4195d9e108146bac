#!/usr/bin/env python3
"""Demonstration of a two-party conversation over the in-process loopback network.

This script shows how to:
1. Initialize two sessions with their own identities
2. Open the same direct conversation from both sides
3. Exchange a message and revoke it

Usage:
    python examples/two_party_demo.py
"""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

# Add the src directory to the path so we can import waku_chat modules
sys.path.insert(0, "src")

from waku_chat.core.settings import Settings
from waku_chat.services.session import ChatSession
from waku_chat.services.transport import LoopbackNetwork


async def demonstrate_conversation(workdir: Path) -> None:
    """Run the complete send and revoke workflow between two sessions."""
    print("💬 Waku Chat Demonstration")
    print("=" * 50)

    network = LoopbackNetwork()
    alice = ChatSession(
        settings=Settings(identity_dir=workdir / "alice"),
        transport=network.transport(),
    )
    bob = ChatSession(
        settings=Settings(identity_dir=workdir / "bob"),
        transport=network.transport(),
    )
    alice_identity = await alice.init()
    bob_identity = await bob.init()
    print(f"Alice: {alice_identity.public_id}")
    print(f"Bob:   {bob_identity.public_id}")
    print()

    conversation = await alice.create_conversation([bob_identity.public_id], "direct")
    await bob.create_conversation([alice_identity.public_id], "direct")
    print(f"Conversation: {conversation.id}")

    await bob.subscribe(
        conversation.id,
        lambda message: print(f"  Bob received [{message.kind}] {message.content!r}"),
    )

    message_id = await alice.send_message(conversation.id, "Hello Bob!")
    await alice.revoke_message(conversation.id, message_id)
    print()

    print("Bob's view:")
    for item in bob.get_display_messages(conversation.id):
        status = "revoked" if item.revoked else item.content
        print(f"  {item.id[:8]} from {item.sender[:10]}: {status}")

    await alice.close()
    await bob.close()


def main() -> None:
    logging.basicConfig(level=logging.WARNING)
    with tempfile.TemporaryDirectory() as workdir:
        asyncio.run(demonstrate_conversation(Path(workdir)))


if __name__ == "__main__":
    main()
