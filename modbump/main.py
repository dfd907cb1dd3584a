import argparse
import asyncio
import logging
import sys
from typing import List, Optional
from dotenv import load_dotenv

from modbump.application.bump_service import BumpService
from modbump.application.config import Configuration, find_config_file, load_config
from modbump.application.ports import StorageClient
from modbump.application.resolver import UpdateResolver
from modbump.domain.exceptions import ConfigurationException, ModBumpException
from modbump.infrastructure.bitbucket_client import BitbucketServerClient
from modbump.infrastructure.database import PostgresStorage
from modbump.infrastructure.file_storage import FileStorage
from modbump.infrastructure.git_client import GitClient
from modbump.infrastructure.go_runner import GoModRunner

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_storage(config: Configuration) -> StorageClient:
    """Picks the storage backend named in the configuration."""
    if config.storage.backend == "database":
        if not config.storage.database.url:
            raise ConfigurationException("storage backend 'database' requires DATABASE_URL to be set.")
        return PostgresStorage(db_url=config.storage.database.url)
    return FileStorage(filename=config.storage.file.filename)


async def run(config: Configuration) -> int:
    """Runs one pass and returns the process exit code."""
    storage = build_storage(config)
    vcs_client = GitClient(config.vcs.git, clone_type=config.general.clone_type)
    resolver = UpdateResolver(
        runner=GoModRunner(),
        filters=config.bump,
        reconcile=config.bump.go_mod_tidy,
    )

    try:
        async with BitbucketServerClient(
            config.scm.bitbucket_server,
            config.scm.pull_request,
            clone_type=config.general.clone_type,
        ) as scm_client:
            bump_service = BumpService(
                scm_client=scm_client,
                vcs_client=vcs_client,
                storage=storage,
                resolver=resolver,
                config=config.general,
                auto_merge=config.scm.pull_request.auto_merge,
            )
            report = await bump_service.run()
    finally:
        await storage.close()

    if not report.ok:
        logger.error(f"{len(report.failures)} repositories failed. First error: {report.first_error}")
        return 1
    return 0


STORAGE_HELP = (
    "Open pull requests are remembered between runs in a local JSON file "
    "(storage.backend: file) or a PostgreSQL table (storage.backend: database, "
    "connection from DATABASE_URL). There is no S3 backend; use the database "
    "backend to share state between machines."
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modbump",
        description="Bump Go module dependencies across every repository of a project.",
        epilog=STORAGE_HELP,
    )
    parser.add_argument("-c", "--config", help="Path to the YAML config file (default: ./.modbump.yaml, ~/.modbump.yaml)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging(args.log_level)

    # Load environment variables (credentials) from .env file
    load_dotenv()

    try:
        config = load_config(find_config_file(args.config))
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Run interrupted by user. Exiting gracefully.")
        return 130
    except ModBumpException as e:
        logger.error(f"Running modbump failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
