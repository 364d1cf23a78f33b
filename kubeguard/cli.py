import sys

import orjson
import typer
from loguru import logger

from kubeguard.config import load_config
from kubeguard.services.admission import Caches, build_registry, run, webhook_configurations

app = typer.Typer(no_args_is_help=True)


def serve():
    run()


def webhook_config(
    webhook_url: str = typer.Option(None, help="Point webhooks at this URL instead of the in-cluster service"),
    namespace: str = typer.Option(None, help="Namespace of the webhook service"),
):
    try:
        overrides = {}
        if webhook_url:
            overrides["webhook_url"] = webhook_url
        if namespace:
            overrides["namespace"] = namespace
        config = load_config(**overrides)

        # handlers are only constructed here, the caches are never read
        registry = build_registry(config, Caches(), sar=_NoSubjectAccessReview())
        print(orjson.dumps(webhook_configurations(config, registry), option=orjson.OPT_INDENT_2).decode())
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to generate webhook configuration:\n{e}")
        sys.exit(1)


class _NoSubjectAccessReview:
    async def create_subject_access_review(self, user, verb, gvr, name="", namespace="") -> bool:
        return False


app.command(name="serve", help="Run the admission webhook server.")(serve)
app.command(name="webhook-config", help="Print the generated webhook configurations.")(webhook_config)

if __name__ == "__main__":
    app()
