import typer
import logging
from kubejoin.commands import enroll, provision
from kubejoin.config import Config
from kubejoin.logging import setup_logger

app = typer.Typer(help="Enroll worker nodes into a Kubernetes cluster without kubeadm.")

debug_mode = False


def setup_logging(debug: bool = False):
    """Configure logging based on debug mode."""
    log_level = logging.DEBUG if debug else getattr(logging, Config.LOG_LEVEL, logging.INFO)
    setup_logger("kubejoin", log_level, quiet_libraries=not debug)


app.add_typer(enroll.app, name="enroll")
app.add_typer(provision.app, name="provision")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """kubejoin - node enrollment for clusters without a bootstrap protocol."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug)
    if debug:
        logging.getLogger("kubejoin").debug("Debug mode enabled")


if __name__ == "__main__":
    app()
