"""Command-line interface for vipingress."""

import argparse
import sys
from pathlib import Path
from typing import Optional

from .logging_config import setup_logging, get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATHS = [Path("vipingress.yaml"), Path("config.yaml"), Path("/etc/vipingress/config.yaml")]


def load_config(path: Optional[str]):
    """Load OperatorConfig from ``path``, the first default location found, or defaults."""
    import yaml
    from .models import OperatorConfig

    config_path = None
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        for candidate in DEFAULT_CONFIG_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        logger.warning("No configuration file found, using defaults")
        return OperatorConfig(), None

    logger.debug("Loading configuration file", config_path=str(config_path))
    with open(config_path) as f:
        config_data = yaml.safe_load(f) or {}
    return OperatorConfig(**config_data), config_path


def run_command(args: argparse.Namespace) -> None:
    """Start the controller and its health API."""
    # Import heavy dependencies only when needed
    import uvicorn
    from .api import app, initialize_controller
    from .logging_config import log_function_entry, log_function_exit

    setup_logging(args.verbose)
    log_function_entry(logger, "run_command", host=args.host, port=args.port, config=args.config, verbose=args.verbose)

    try:
        operator_config, config_path = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error("Failed to load configuration", config_path=args.config, error=str(e))
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if config_path:
        logger.info("Configuration loaded successfully",
                    config_path=str(config_path),
                    operator_id=operator_config.operator_id,
                    workers=operator_config.workers)
        print(f"Loaded configuration from {config_path}")
    else:
        print("No configuration file found. Using default configuration.")

    try:
        initialize_controller(operator_config)
    except Exception as e:
        logger.error("Failed to initialize controller", error=str(e))
        print(f"Error initializing controller: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting vipingress", host=args.host, port=args.port)
    print(f"Starting vipingress on {args.host}:{args.port}")

    log_function_exit(logger, "run_command", status="starting_server")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info" if not args.verbose else "debug"
    )


def init_config_command(args: argparse.Namespace) -> None:
    """Generate a sample configuration file."""
    import yaml

    sample_config = {
        "operator_namespace": "tailscale",
        "operator_id": "vipingress-prod-us-west-1",
        "ingress_class": "tailscale",
        "default_tags": ["tag:k8s"],
        "kubeconfig_path": None,
        "context": None,
        "tailnet": "-",
        "api_base_url": "https://api.tailscale.com",
        "api_token_file": "/etc/vipingress/api-token",
        "local_api_socket": "/var/run/tailscale/tailscaled.sock",
        "request_timeout": 10,
        "workers": 4,
        "backoff_base_seconds": 0.5,
        "backoff_max_seconds": 300,
        "warn_after_failures": 5,
        "pending_requeue_seconds": 10,
    }

    config_yaml = yaml.dump(sample_config, default_flow_style=False, sort_keys=False)

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(config_yaml)
        print(f"Sample configuration written to {output_path}")
    else:
        print("Sample configuration:\n")
        print(config_yaml)


def validate_config_command(args: argparse.Namespace) -> None:
    """Validate a configuration file."""
    import yaml
    from .models import OperatorConfig

    config_path = Path(args.config)

    try:
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

        operator_config = OperatorConfig(**config_data)
        print(f"✓ Configuration file {config_path} is valid")

        print(f"\nConfiguration summary:")
        print(f"  Operator ID: {operator_config.operator_id}")
        print(f"  Namespace: {operator_config.operator_namespace}")
        print(f"  Ingress class: {operator_config.ingress_class}")
        print(f"  Default tags: {', '.join(operator_config.default_tags) or 'None'}")
        print(f"  Tailnet: {operator_config.tailnet}")
        print(f"  Workers: {operator_config.workers}")

    except Exception as e:
        print(f"✗ Configuration file {config_path} is invalid: {e}", file=sys.stderr)
        sys.exit(1)


def version_command(args: argparse.Namespace) -> None:
    """Show version information."""
    from . import __version__
    print(f"vipingress {__version__}")


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="vipingress: expose Kubernetes Ingresses as tailnet VIP services",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the controller and health API")
    run_parser.add_argument(
        "--config", "-c",
        help="Configuration file path"
    )
    run_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind the health API to (default: 0.0.0.0)"
    )
    run_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port to bind the health API to (default: 8080)"
    )
    run_parser.set_defaults(func=run_command)

    init_parser = subparsers.add_parser("init-config", help="Generate a sample configuration file")
    init_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)"
    )
    init_parser.set_defaults(func=init_config_command)

    validate_parser = subparsers.add_parser("validate-config", help="Validate a configuration file")
    validate_parser.add_argument(
        "--config", "-c",
        required=True,
        help="Configuration file path"
    )
    validate_parser.set_defaults(func=validate_config_command)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=version_command)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
