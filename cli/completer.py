"""Custom completer for the VaultLift CLI with file and session-id completion."""

from pathlib import Path
from typing import Callable, Iterable, List, Optional

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from cli.constants import COMMANDS, NODE_ACTIONS


class VaultLiftCompleter(Completer):
    """
    Custom completer that provides:
    - Command name completion for the first token
    - Local file path completion for 'upload' arguments (skipping files already typed)
      and the file of 'resume'
    - Saved upload-id completion for 'resume' and 'abandon'
    - Action completion for 'nodes'
    """

    def __init__(
        self,
        session_ids: Optional[Callable[[], List[str]]] = None,
        base_dir: Optional[Path] = None
    ):
        """
        Args:
            session_ids: Returns the ids of saved sessions (called on each completion)
            base_dir: Directory relative paths are resolved against (defaults to cwd)
        """
        self.session_ids = session_ids or (lambda: [])
        self.base_dir = base_dir

    def get_completions(
        self, document: Document, complete_event
    ) -> Iterable[Completion]:
        text = document.text_before_cursor
        tokens = text.split()

        is_typing_new_token = text.endswith(" ") or not tokens

        if not tokens or (len(tokens) == 1 and not is_typing_new_token):
            yield from self._complete_words(COMMANDS, tokens[0] if tokens else "")
            return

        command = tokens[0].lower()
        current_word = "" if is_typing_new_token else tokens[-1]
        position = len(tokens) if is_typing_new_token else len(tokens) - 1

        if command == "upload":
            typed = set(tokens[1:] if is_typing_new_token else tokens[1:-1])
            for completion in self._complete_paths(current_word):
                if completion.text not in typed:
                    yield completion
        elif command == "resume":
            if position == 1:
                yield from self._complete_words(self.session_ids(), current_word)
            elif position == 2:
                yield from self._complete_paths(current_word)
        elif command == "abandon" and position == 1:
            yield from self._complete_words(self.session_ids(), current_word)
        elif command == "nodes" and position == 1:
            yield from self._complete_words(NODE_ACTIONS, current_word)

    def _complete_words(self, words: Iterable[str], partial: str) -> Iterable[Completion]:
        partial_lower = partial.lower()
        for word in words:
            if word.lower().startswith(partial_lower):
                yield Completion(word, start_position=-len(partial))

    def _complete_paths(self, partial: str) -> Iterable[Completion]:
        """
        Complete file and directory paths.

        Directories are offered with a trailing '/' so completion can continue into them.
        """
        base = self.base_dir or Path.cwd()
        head, _, prefix = partial.rpartition('/')
        directory = (base / head) if head else base
        if partial.startswith('/'):
            directory = Path(head or '/')

        if not directory.is_dir():
            return

        for item in sorted(directory.iterdir()):
            if item.name.startswith('.') and not prefix.startswith('.'):
                continue
            if not item.name.startswith(prefix):
                continue
            suggestion = f"{head}/{item.name}" if head or partial.startswith('/') else item.name
            if item.is_dir():
                suggestion += '/'
            yield Completion(suggestion, start_position=-len(partial))
