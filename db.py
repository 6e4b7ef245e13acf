"""
Database initialization and maintenance utilities.
"""
import sys
import argparse

from database import get_db_manager
from shared.models.entities import Base
from shared.repositories import ConversationRepository


def migrate():
    """Create all database tables."""
    print("Creating database tables...")
    db_manager = get_db_manager()

    try:
        Base.metadata.create_all(bind=db_manager.engine)
        print("✓ Tables created")
    except Exception as e:
        print(f"Error during migration: {e}")
        raise


def create_conversation(title: str):
    """Create an empty conversation and print its id."""
    db_manager = get_db_manager()
    with db_manager.session_scope() as db:
        conversation = ConversationRepository(db).create(title=title)
        print(f"✓ Created conversation {conversation.id} ({title})")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Database management CLI")
    parser.add_argument("--migrate", action="store_true", help="Create database tables")
    parser.add_argument("--create-conversation", type=str, metavar="TITLE", help="Create an empty conversation")

    args = parser.parse_args()

    if args.migrate:
        migrate()
    elif args.create_conversation:
        create_conversation(args.create_conversation)
    else:
        print("Usage:")
        print("  python db.py --migrate                        # Create tables")
        print("  python db.py --create-conversation <title>    # Create a conversation")
        sys.exit(1)
