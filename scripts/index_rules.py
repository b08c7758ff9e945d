import argparse
import asyncio
import logging
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "backend"))

from ticket_audit.core.config import get_settings
from ticket_audit.core.logging import configure_logging
from ticket_audit.main import build_embedding_provider
from ticket_audit.rag.indexer import index_rule_corpus
from ticket_audit.storage.vector_store import RuleCorpusStore

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Index JSON rule documents into the rule corpus store.")
    parser.add_argument("--rules", default="data/rules", help="Directory of rule JSON files.")
    return parser.parse_args()


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    args = parse_args()
    corpus_path = REPO_ROOT / args.rules

    store = RuleCorpusStore(settings.corpus_db_path, settings.corpus_cache_ttl_seconds)
    provider = build_embedding_provider(settings)
    chunks = asyncio.run(index_rule_corpus(corpus_path, store, provider))
    logger.info("Rule indexing finished", extra={"chunks": chunks, "db_path": str(settings.corpus_db_path)})


if __name__ == "__main__":
    main()
