"""Interactive REPL for chatting through the codemate gateway."""

from __future__ import annotations

import asyncio
import sys

from . import __version__
from .app import AppContext
from .conversation import MAIN_BRANCH
from .errors import CodemateError
from .provider import StubLLMProvider
from .registry import Provider

_HELP = """Commands:
  new [title]          start a new conversation
  branch <message-id>  fork the conversation at a main-branch message
  switch <branch-id>   continue on another branch (main by default)
  history              show the current branch
  export               print the conversation as Markdown
  models               list known models
  usage                show token usage and cost so far
  help                 show this help
  quit / exit          leave
Anything else is sent to the model."""


async def async_main(offline: bool = False) -> None:
    """Run the REPL; ``offline`` uses stub providers instead of real APIs."""
    providers = (
        {p: StubLLMProvider(provider_name=p.value) for p in Provider} if offline else None
    )
    ctx = AppContext.create(providers=providers)
    config = ctx.gateway.get_default_config()

    print(f"codemate REPL v{__version__}")
    print(f"Provider: {config.provider} (model={config.model}){' [offline]' if offline else ''}")
    print("Type 'help' for commands, 'quit' to exit")
    print()

    conversation = ctx.conversations.create_conversation()
    branch_id = MAIN_BRANCH

    try:
        while True:
            try:
                user_input = input("codemate> ")
            except (EOFError, KeyboardInterrupt):
                print("\nBye!")
                break

            stripped = user_input.strip()
            if not stripped:
                continue
            command, _, arg = stripped.partition(" ")
            arg = arg.strip()

            if command in ("quit", "exit"):
                print("Bye!")
                break
            if command == "help":
                print(_HELP)
                continue
            if command == "new":
                conversation = ctx.conversations.create_conversation(arg or "New conversation")
                branch_id = MAIN_BRANCH
                print(f"  Started conversation {conversation.id}")
                continue
            if command == "models":
                for provider in Provider:
                    models = ", ".join(ctx.gateway.get_models_for_provider(provider))
                    print(f"  {provider}: {models}")
                continue
            if command == "usage":
                _print_usage(ctx)
                continue

            try:
                if command == "branch" and arg:
                    branch = ctx.conversations.create_branch(conversation.id, arg)
                    branch_id = branch.id
                    print(f"  Now on branch {branch_id} ({len(branch.messages)} messages)")
                elif command == "switch":
                    branch_id = ctx.conversations.switch_to_branch(
                        conversation.id, arg or MAIN_BRANCH
                    ).id
                    print(f"  Now on branch {branch_id}")
                elif command == "history":
                    branch = ctx.conversations.switch_to_branch(conversation.id, branch_id)
                    for message in branch.messages:
                        print(f"  [{message.id}] {message.role}: {message.content}")
                elif command == "export":
                    print(ctx.conversations.export_to_markdown(conversation.id, branch_id))
                else:
                    await _stream_reply(ctx, conversation.id, stripped, branch_id)
            except CodemateError as exc:
                print(f"  Error: {exc}")
    finally:
        ctx.close()


async def _stream_reply(ctx: AppContext, conversation_id: str, text: str, branch_id: str) -> None:
    print("  ", end="", flush=True)
    async for chunk in ctx.session.send_stream(conversation_id, text, branch_id):
        if chunk.error:
            print(f"\n  Error: {chunk.error}")
            return
        print(chunk.content, end="", flush=True)
    print()


def _print_usage(ctx: AppContext) -> None:
    summary = ctx.gateway.usage_summary()
    if not summary:
        print("  No requests yet")
        return
    for (provider, model), record in summary.items():
        print(
            f"  {provider}/{model}: {record.requests} request(s), "
            f"{record.prompt_tokens}+{record.completion_tokens} tokens, ${record.cost:.4f}"
        )


def main() -> None:
    """Entry point for the ``codemate-repl`` command."""
    asyncio.run(async_main(offline="--offline" in sys.argv))


if __name__ == "__main__":
    main()
