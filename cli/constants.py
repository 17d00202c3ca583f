"""CLI constants and configuration."""

from pathlib import Path

from prompt_toolkit.styles import Style

COMMANDS = ["upload", "resume", "sessions", "abandon", "nodes", "clear", "exit", "help"]

NODE_ACTIONS = ["list", "check", "add", "remove"]

CONFIG_PATH = Path.home() / '.vaultlift' / 'config.json'

STYLE = Style.from_dict(
    {
        "prompt": "#2BB673 bold",
        "command": "#0088ff bold",
    }
)

TEAL = "\033[38;2;43;182;115m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"

LOGO = f"""{TEAL}
 ██╗   ██╗ █████╗ ██╗   ██╗██╗  ████████╗██╗     ██╗███████╗████████╗
 ██║   ██║██╔══██╗██║   ██║██║  ╚══██╔══╝██║     ██║██╔════╝╚══██╔══╝
 ██║   ██║███████║██║   ██║██║     ██║   ██║     ██║█████╗     ██║
 ╚██╗ ██╔╝██╔══██║██║   ██║██║     ██║   ██║     ██║██╔══╝     ██║
  ╚████╔╝ ██║  ██║╚██████╔╝███████╗██║   ███████╗██║██║        ██║
   ╚═══╝  ╚═╝  ╚═╝ ╚═════╝ ╚══════╝╚═╝   ╚══════╝╚═╝╚═╝        ╚═╝
{RESET}"""

WELCOME_TITLE = "VaultLift CLI - Resumable chunked uploads"
WELCOME_HELP = "Type 'help' for commands or 'exit' to quit.\n"

PROMPT_TEXT = "vaultlift> "

HELP_TEXT = """Available commands:
  upload <file...> [--folder ID]      Upload one or more files (large files are chunked and resumable)
  resume <upload-id> <file>           Resume an interrupted chunked upload
  sessions                            List resumable uploads saved on this machine
  abandon <upload-id>                 Forget a saved upload (chunks already on the node are kept)
  nodes [list]                        Show known storage nodes
  nodes check                         Probe every node's health endpoint
  nodes add <id> <endpoint> [key] [--priority N]
                                      Register an extra storage node
  nodes remove <id>                   Unregister a storage node (the primary cannot be removed)
  clear                               Clear screen and redisplay welcome message
  help                                Show this help
  exit                                Exit REPL

Press Ctrl+C during an upload to pause it; resume it later with 'resume'.
Examples:
  upload holiday.mp4
  upload a.pdf b.pdf --folder 6f1c
  sessions
  resume 0b5e7c1e-... holiday.mp4
  nodes add backup https://backup.example.com/api secret-key --priority 2"""
