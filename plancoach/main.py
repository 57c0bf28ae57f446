import argparse

from plancoach.agent import build_agent
from plancoach.config import get_settings
from plancoach.logging_setup import configure_logging
from plancoach.seed import USER_ID, seed_demo_plan


def run_chat(user_id: str, seed_demo: bool = False) -> None:
    settings = get_settings()
    agent = build_agent(settings)
    if seed_demo or (settings.storage_backend == "memory" and agent.adapter.get_active_plan(user_id) is None):
        seed_demo_plan(agent.repository, user_id)
        print(f"[Coach] Demo plan loaded for {user_id}.")
    if agent.completion is None:
        print("[Coach] No GEMINI_API_KEY: only checkups and pending confirmations will work.")

    session = agent.repository.load_session(user_id) or {}
    history = []
    print("[Coach] Type 'bilan' for a checkup, 'exit' to quit.\n")

    while True:
        try:
            user_input = input("Toi: ")
        except EOFError:
            break
        if user_input.strip().lower() in {"exit", "quit"}:
            break
        if not user_input.strip():
            continue

        result = agent.process_turn(user_id, user_input, history, session)
        session = result.new_session_state
        agent.repository.save_session(user_id, session)
        history.append({"role": "user", "content": user_input})
        history.append({"role": "assistant", "content": result.reply_text})

        print(f"Coach: {result.reply_text}")
        if result.executed_tools:
            print(f"  [{result.outcome.value}] {', '.join(result.executed_tools)}")

    agent.ledger.flush(timeout=5)


def main():
    parser = argparse.ArgumentParser(description="Chat with the plan coach from the terminal.")
    parser.add_argument("--user", default=USER_ID, help="User id to chat as.")
    parser.add_argument("--seed-demo", action="store_true", help="Write the demo plan before starting.")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING...")
    args = parser.parse_args()

    configure_logging(args.log_level)
    run_chat(args.user, seed_demo=args.seed_demo)


if __name__ == "__main__":
    main()
