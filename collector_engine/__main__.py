"""
collector-engine CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from collector_engine.change_detector import EnrichmentWatcher
from collector_engine.client import CollectorClient
from collector_engine.config.settings import CollectorConfig
from collector_engine.dockerprobe import ContainerProcessMapper, DockerSDKClient
from collector_engine.enrichment_tables import ContainersEnrichmentTable
from collector_engine.error_record import ErrorRecord
from collector_engine.exceptions import AuthenticationError, ConfigurationError
from collector_engine.kubernetes_discovery import KubernetesDiscovery
from collector_engine.logging_config import setup_logging as setup_full_logging
from collector_engine.ssl_certificate_manager import SSLCertificateManager
from collector_engine.supervisor import SupervisorControl
from collector_engine.updater import Updater
from collector_engine.vector_config import VectorConfig

DEFAULT_CONFIG_PATH = "/etc/collector-engine/config.yml"


def setup_logging(log_dir: str, log_name: str, verbose: bool = False) -> None:
    """Setup file and console logging, falling back to stdout only."""
    console_level = "DEBUG" if verbose else "INFO"

    if not os.access(Path(log_dir).parent, os.W_OK) and not os.access(log_dir, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "collector-engine")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level="DEBUG",
            use_json=False,
            log_name=log_name,
        )
    except PermissionError:
        logging.basicConfig(
            level=getattr(logging, console_level),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def build_supervisor(config: CollectorConfig) -> SupervisorControl:
    return SupervisorControl(
        command=config.supervisor.command,
        config=config.supervisor.config,
        shipper_program=config.supervisor.shipper_program,
        certbot_program=config.supervisor.certbot_program,
    )


def build_client(config: CollectorConfig) -> CollectorClient:
    """Wire the fetch client and its collaborators from configuration."""
    supervisor = build_supervisor(config)
    working_dir = config.paths.working_dir

    vector_config = VectorConfig(
        working_dir,
        supervisor,
        binary=config.vector.binary,
        retention=config.vector.retention,
        validation_env=config.vector.validation_env,
        validation_timeout=config.vector.validation_timeout,
    )
    discovery = KubernetesDiscovery(
        working_dir,
        vector_config.run_validator,
        min_interval=config.kubernetes.min_interval,
        keep_count=config.kubernetes.keep_count,
        service_account_path=config.kubernetes.service_account_path,
        node_name=os.getenv("HOSTNAME"),
    )
    cert_manager = SSLCertificateManager(
        str(config.domain_file), cert_dir=config.ssl.cert_dir, supervisor=supervisor
    )

    return CollectorClient(
        config,
        vector_config,
        cert_manager,
        ErrorRecord(working_dir),
        supervisor,
        kubernetes_discovery=discovery,
    )


def run_updater(config: CollectorConfig) -> int:
    client = build_client(config)
    updater = Updater(
        client,
        ContainersEnrichmentTable(
            str(config.paths.containers_table), str(config.paths.containers_table_incoming)
        ),
        client.controller,
        client.error_record,
        sleep_duration=config.updater.sleep_duration,
        ping_every=config.updater.ping_every,
    )
    asyncio.run(updater.run())
    return 0


def run_dockerprobe(config: CollectorConfig) -> int:
    mapper = ContainerProcessMapper(
        DockerSDKClient(),
        output_path=str(config.mapping_output_path),
        interval=config.dockerprobe.interval,
        proc_path=config.dockerprobe.proc_path,
    )
    asyncio.run(mapper.run())
    return 0


def run_watch_enrichment(config: CollectorConfig, path: Optional[str], interval: float) -> int:
    watcher = EnrichmentWatcher(
        path or str(config.paths.containers_table),
        build_supervisor(config),
        interval=interval,
    )
    asyncio.run(watcher.run())
    return 0


def run_cluster_collector(config: CollectorConfig) -> int:
    """Exit 0 when this collector holds the cluster role, 1 when not, 2 on error."""
    logger = logging.getLogger(__name__)
    try:
        client = build_client(config)
        is_cluster_collector = asyncio.run(client.cluster_collector())
    except (AuthenticationError, ConfigurationError):
        raise
    except Exception as e:
        logger.error(f"Cluster collector check failed: {e}")
        return 2

    print("yes" if is_cluster_collector else "no")
    return 0 if is_cluster_collector else 1


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="collector-engine - configuration updater and container process mapper"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=os.getenv("COLLECTOR_ENGINE_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("updater", help="Poll the control plane and promote configuration")
    subparsers.add_parser("dockerprobe", help="Map container processes to containers")
    watch_parser = subparsers.add_parser(
        "watch-enrichment", help="Reload the shipper when an enrichment file changes"
    )
    watch_parser.add_argument("--path", type=str, default=None, help="File to watch")
    watch_parser.add_argument("--interval", type=float, default=15, help="Seconds between checks")
    subparsers.add_parser(
        "cluster-collector", help="Exit 0 if this collector should run cluster collection"
    )

    args = parser.parse_args()

    if args.generate_config:
        CollectorConfig().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    if args.validate_config:
        try:
            CollectorConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except Exception as e:
            print(f"Configuration invalid: {e}")
            return 1

    if not args.command:
        parser.print_help()
        return 2

    try:
        config = CollectorConfig.from_file(args.config)
    except Exception as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    setup_logging(config.paths.log_dir, args.command, args.verbose)
    logger = logging.getLogger(__name__)

    try:
        if args.command == "updater":
            return run_updater(config)
        if args.command == "dockerprobe":
            return run_dockerprobe(config)
        if args.command == "watch-enrichment":
            return run_watch_enrichment(config, args.path, args.interval)
        return run_cluster_collector(config)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except AuthenticationError as e:
        logger.critical(str(e))
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error running collector-engine: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running collector-engine: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
