"""Coloured status lines for the CLI. Every line is also logged."""

import logging

from colorama import Fore, Style, init

init(autoreset=True)

logger = logging.getLogger("addonctl")


def print_header(message):
    """Print a formatted header message."""
    print(f"\n{Fore.CYAN}{Style.BRIGHT}{'=' * 60}")
    print(f"{Fore.CYAN}{Style.BRIGHT}{message.center(60)}")
    print(f"{Fore.CYAN}{Style.BRIGHT}{'=' * 60}{Style.RESET_ALL}\n")


def print_success(message):
    """Print a success message."""
    print(f"{Fore.GREEN}✓ {message}{Style.RESET_ALL}")
    logger.info(message)


def print_error(message):
    """Print an error message."""
    print(f"{Fore.RED}✗ {message}{Style.RESET_ALL}")
    logger.error(message)


def print_warning(message):
    """Print a warning message."""
    print(f"{Fore.YELLOW}⚠ {message}{Style.RESET_ALL}")
    logger.warning(message)


def print_info(message):
    """Print an info message."""
    print(f"{Fore.BLUE}ℹ {message}{Style.RESET_ALL}")
    logger.info(message)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question until the user answers."""
    while True:
        response = input(f"{Fore.YELLOW}{prompt} (yes/no): {Style.RESET_ALL}").strip().lower()
        if response in ("yes", "y"):
            return True
        if response in ("no", "n"):
            return False
        print_warning("Please enter 'yes' or 'no'")
