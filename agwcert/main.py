import asyncio
import logging
import logging.config
from pathlib import Path
from typing import Any

import click
import yaml

from agwcert.exceptions import RenewalException
from agwcert.pipeline import (
    RenewalPipeline,
    challenge_solver_registry,
    installer_registry,
)
from agwcert.plugin_base import PluginRegistry
from agwcert.util import generate_rsa_key, generate_ec_key

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"plugins")


class Config(RenewalPipeline.Config):
    logging: Any = None


def apply_overrides(data: dict, overrides: dict[tuple[str, ...], Any]) -> dict:
    """Sets the given values in the nested config dict, skipping values that are None.

    :param data: The config as loaded from YAML.
    :param overrides: Mapping of key paths to values, e.g. ``{("installer", "gateway"): "agw"}``.
    :return: The updated config dict.
    """
    for path, value in overrides.items():
        if value is None:
            continue
        node = data
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return data


def configure_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    for plugins in [
        ("Challenge solvers", challenge_solver_registry.config_mapping()),
        ("Certificate installers", installer_registry.config_mapping()),
    ]:
        click.echo(
            f"{plugins[0]}: {', '.join([f'{app.__name__} ({config_name})' for config_name, app in plugins[1].items()])}"
        )


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="rsa",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        generate_rsa_key(account_key_file)
    else:
        generate_ec_key(account_key_file)


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(exists=True))
@click.option("--domain", help="The domain to renew the certificate for.")
@click.option("--email", help="Contact address of the ACME account.")
@click.option("--directory", help="The ACME server's directory URL.")
@click.option("--storage-account-url", help="Blob endpoint of the storage account serving the challenges.")
@click.option("--container", help="Blob container serving the challenges.")
@click.option("--subscription-id", help="Subscription of the Application Gateway.")
@click.option("--resource-group", help="Resource group of the Application Gateway.")
@click.option("--gateway", help="Name of the Application Gateway.")
@click.option("--certificate-name", help="Name of the gateway's SSL certificate to replace.")
def run(
    config_file: str | None,
    domain: str | None,
    email: str | None,
    directory: str | None,
    storage_account_url: str | None,
    container: str | None,
    subscription_id: str | None,
    resource_group: str | None,
    gateway: str | None,
    certificate_name: str | None,
):
    """Renews the certificate and installs it on the Application Gateway.

    Settings are read from the config file, options given on the command line take precedence.
    """
    if config_file:
        with open(config_file) as stream:
            data = yaml.safe_load(stream) or {}
    else:
        data = {}

    if storage_account_url or container:
        data.setdefault("solver", {}).setdefault("type", "azure_blob")
    if subscription_id or resource_group or gateway or certificate_name:
        data.setdefault("installer", {}).setdefault("type", "appgw")

    apply_overrides(
        data,
        {
            ("domain",): domain,
            ("email",): email,
            ("acme", "directory"): directory,
            ("solver", "account_url"): storage_account_url,
            ("solver", "container"): container,
            ("installer", "subscription_id"): subscription_id,
            ("installer", "resource_group"): resource_group,
            ("installer", "gateway"): gateway,
            ("installer", "certificate_name"): certificate_name,
        },
    )

    try:
        config = Config.model_validate(data)
    except ValueError as e:
        raise click.UsageError(str(e))

    configure_logging(config)

    pipeline = RenewalPipeline.from_config(config)
    try:
        state = asyncio.run(pipeline.run())
    except RenewalException as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")

    click.echo(f"Renewal of {config.domain} finished: {state.value}")


if __name__ == "__main__":
    main()
