"""Voice command registry, matching and dispatch"""

import re
import threading
from collections import Counter
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from .config import VoiceCommandConfig, merge_config
from .models import CommandAction, Language, VoiceCommand, VoiceCommandResult
from .text_utils import levenshtein_distance

logger = structlog.get_logger(__name__)

EXACT_MATCH_CONFIDENCE = 1.0
CONTAINS_MATCH_CONFIDENCE = 0.9

HELP_HEADERS = {
    Language.BANGLA: "উপলব্ধ ভয়েস কমান্ড:",
    Language.ENGLISH: "Available voice commands:",
}


def default_commands() -> List[VoiceCommand]:
    """Built-in bilingual command set"""
    i = re.IGNORECASE
    return [
        # Language switching
        VoiceCommand.from_pattern(
            "switch-to-bangla", re.compile(r"(?:switch to|change to|use) (?:bangla|bengali)", i),
            CommandAction.SWITCH_LANGUAGE, description="Switch to Bangla language", language="en", parameters=["bn"],
        ),
        VoiceCommand.from_pattern(
            "switch-to-english", re.compile(r"(?:switch to|change to|use) english", i),
            CommandAction.SWITCH_LANGUAGE, description="Switch to English language", language="en", parameters=["en"],
        ),
        VoiceCommand.from_pattern(
            "bangla-te-jao", re.compile(r"বাংলা(?:\s+তে)?\s+(?:যাও|চলো|করো)"),
            CommandAction.SWITCH_LANGUAGE, description="বাংলায় পরিবর্তন করুন", language="bn", parameters=["bn"],
        ),
        VoiceCommand.from_pattern(
            "english-e-jao", re.compile(r"ইংরেজি(?:\s+তে)?\s+(?:যাও|চলো|করো)"),
            CommandAction.SWITCH_LANGUAGE, description="ইংরেজিতে পরিবর্তন করুন", language="bn", parameters=["en"],
        ),
        # Speech control
        VoiceCommand.from_pattern(
            "stop-speaking", re.compile(r"(?:stop|pause|quiet)", i),
            CommandAction.STOP_SPEECH, description="Stop current speech output", language="en",
        ),
        VoiceCommand.from_pattern(
            "stop-speaking-bn", re.compile(r"(?:বন্ধ|থামো|চুপ)\s*(?:করো|কর)?"),
            CommandAction.STOP_SPEECH, description="বর্তমান বক্তৃতা বন্ধ করুন", language="bn",
        ),
        VoiceCommand.from_pattern(
            "repeat-last", re.compile(r"(?:repeat|say again|replay)", i),
            CommandAction.REPLAY_SPEECH, description="Repeat the last AI response", language="en",
        ),
        VoiceCommand.from_pattern(
            "repeat-last-bn", re.compile(r"(?:আবার|পুনরায়|রিপিট)\s*(?:বলো|বল|করো|কর)?"),
            CommandAction.REPLAY_SPEECH, description="শেষ AI উত্তর পুনরায় বলুন", language="bn",
        ),
        # Conversation management
        VoiceCommand.from_pattern(
            "clear-conversation", re.compile(r"(?:clear|delete|remove) (?:conversation|chat|history)", i),
            CommandAction.CLEAR_CONVERSATION, description="Clear conversation history", language="en",
        ),
        VoiceCommand.from_pattern(
            "clear-conversation-bn", re.compile(r"(?:কথোপকথন|চ্যাট|ইতিহাস)\s*(?:মুছে|সাফ|ক্লিয়ার)\s*(?:দাও|করো|কর)"),
            CommandAction.CLEAR_CONVERSATION, description="কথোপকথনের ইতিহাস মুছে দিন", language="bn",
        ),
        # Help
        VoiceCommand.from_pattern(
            "help", re.compile(r"(?:help|what can you do|commands)", i),
            CommandAction.SHOW_HELP, description="Show available voice commands", language="en",
        ),
        VoiceCommand.from_pattern(
            "help-bn", re.compile(r"(?:সাহায্য|হেল্প|কি\s*করতে\s*পারো|কমান্ড)"),
            CommandAction.SHOW_HELP, description="উপলব্ধ ভয়েস কমান্ড দেখান", language="bn",
        ),
        # Speech rate
        VoiceCommand.from_pattern(
            "speak-faster", re.compile(r"(?:speak|talk) (?:faster|quickly)", i),
            CommandAction.ADJUST_SPEECH_RATE, description="Increase speech rate", language="en", parameters=["increase"],
        ),
        VoiceCommand.from_pattern(
            "speak-slower", re.compile(r"(?:speak|talk) (?:slower|slowly)", i),
            CommandAction.ADJUST_SPEECH_RATE, description="Decrease speech rate", language="en", parameters=["decrease"],
        ),
        VoiceCommand.from_pattern(
            "speak-faster-bn", re.compile(r"(?:দ্রুত|তাড়াতাড়ি)\s*(?:বলো|বল)"),
            CommandAction.ADJUST_SPEECH_RATE, description="বক্তৃতার গতি বাড়ান", language="bn", parameters=["increase"],
        ),
        VoiceCommand.from_pattern(
            "speak-slower-bn", re.compile(r"(?:ধীরে|আস্তে)\s*(?:বলো|বল)"),
            CommandAction.ADJUST_SPEECH_RATE, description="বক্তৃতার গতি কমান", language="bn", parameters=["decrease"],
        ),
        # Volume
        VoiceCommand.from_pattern(
            "volume-up", re.compile(r"(?:volume|sound) (?:up|higher|louder)", i),
            CommandAction.ADJUST_VOLUME, description="Increase volume", language="en", parameters=["increase"],
        ),
        VoiceCommand.from_pattern(
            "volume-down", re.compile(r"(?:volume|sound) (?:down|lower|quieter)", i),
            CommandAction.ADJUST_VOLUME, description="Decrease volume", language="en", parameters=["decrease"],
        ),
        VoiceCommand.from_pattern(
            "volume-up-bn", re.compile(r"(?:আওয়াজ|ভলিউম)\s*(?:বাড়াও|বেশি|উঁচু)\s*(?:করো|কর)?"),
            CommandAction.ADJUST_VOLUME, description="আওয়াজ বাড়ান", language="bn", parameters=["increase"],
        ),
        VoiceCommand.from_pattern(
            "volume-down-bn", re.compile(r"(?:আওয়াজ|ভলিউম)\s*(?:কমাও|কম|নিচু)\s*(?:করো|কর)?"),
            CommandAction.ADJUST_VOLUME, description="আওয়াজ কমান", language="bn", parameters=["decrease"],
        ),
    ]


class VoiceCommandRegistry:
    """Commands keyed by id, iterated in registration order"""

    def __init__(self, commands: Optional[List[VoiceCommand]] = None):
        self._commands: Dict[str, VoiceCommand] = {}
        self._lock = threading.RLock()
        for command in commands or []:
            self.add(command)

    def add(self, command: VoiceCommand) -> None:
        with self._lock:
            self._commands[command.id] = command

    def remove(self, command_id: str) -> bool:
        with self._lock:
            return self._commands.pop(command_id, None) is not None

    def update(self, command_id: str, updates: Mapping[str, Any]) -> Optional[VoiceCommand]:
        with self._lock:
            existing = self._commands.get(command_id)
            if existing is None:
                return None
            merged = {**existing.model_dump(), **dict(updates), "id": command_id}
            updated = VoiceCommand.model_validate(merged)
            self._commands[command_id] = updated
            return updated

    def set_enabled(self, predicate: Callable[[VoiceCommand], bool], enabled: bool) -> int:
        with self._lock:
            changed = 0
            for command_id, command in self._commands.items():
                if predicate(command):
                    self._commands[command_id] = command.model_copy(update={"enabled": enabled})
                    changed += 1
            return changed

    def get(self, command_id: str) -> Optional[VoiceCommand]:
        with self._lock:
            return self._commands.get(command_id)

    def all(self) -> List[VoiceCommand]:
        with self._lock:
            return list(self._commands.values())

    def clear(self) -> None:
        with self._lock:
            self._commands.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)


class CommandMatcher:
    """Matches utterances against the command registry.

    Pattern triggers score 1.0 on a match. Literal triggers score 1.0 on an
    exact match, 0.9 when contained in the text, and otherwise
    ``1 - distance / max_length`` when fuzzy matching is on and the edit
    distance is within ``max_edit_distance``. The best result at or above
    ``confidence_threshold`` wins; ties go to the earlier registered command.
    """

    def __init__(
        self,
        config: Optional[VoiceCommandConfig] = None,
        registry: Optional[VoiceCommandRegistry] = None,
    ):
        self.config = config or VoiceCommandConfig()
        self.registry = registry if registry is not None else VoiceCommandRegistry(default_commands())
        self._callbacks: List[Callable[[VoiceCommandResult], None]] = []

    def process_text(self, text: str, language: Union[Language, str]) -> Optional[VoiceCommandResult]:
        if not self.config.enabled or not text or not text.strip():
            return None

        language = Language(language).value
        clean_text = text.strip() if self.config.case_sensitive else text.strip().lower()

        best: Optional[VoiceCommandResult] = None
        for command in self.registry.all():
            if not command.enabled:
                continue
            if command.language != "both" and command.language != language:
                continue

            result = self._match(command, clean_text, text)
            if result is None or result.confidence < self.config.confidence_threshold:
                continue
            if best is None or result.confidence > best.confidence:
                best = result

        if best is not None:
            logger.info("Voice command detected", command_id=best.command.id, confidence=best.confidence)
            for callback in list(self._callbacks):
                try:
                    callback(best)
                except Exception as e:
                    logger.error("Command subscriber failed", error=str(e))
        return best

    def _match(self, command: VoiceCommand, clean_text: str, original_text: str) -> Optional[VoiceCommandResult]:
        confidence = 0.0
        parameters: Dict[str, str] = {}

        if command.is_pattern:
            match = command.compiled().search(clean_text)
            if match:
                confidence = EXACT_MATCH_CONFIDENCE
                named = {key: value for key, value in match.groupdict().items() if value is not None}
                if named:
                    parameters = named
                else:
                    for index, value in enumerate(match.groups(), start=1):
                        if value is not None:
                            parameters[f"param{index}"] = value
        else:
            trigger = command.trigger if self.config.case_sensitive else command.trigger.lower()
            if clean_text == trigger:
                confidence = EXACT_MATCH_CONFIDENCE
            elif trigger and trigger in clean_text:
                confidence = CONTAINS_MATCH_CONFIDENCE
            elif self.config.fuzzy_matching:
                distance = levenshtein_distance(clean_text, trigger)
                max_length = max(len(clean_text), len(trigger))
                if max_length > 0 and distance <= self.config.max_edit_distance:
                    confidence = 1.0 - distance / max_length

        if confidence <= 0:
            return None

        # Static parameters override captured ones with the same key
        for index, value in enumerate(command.parameters):
            parameters[f"param{index}"] = value

        return VoiceCommandResult(
            command=command,
            confidence=confidence,
            parameters=parameters,
            original_text=original_text,
        )

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------

    def add_command(self, command: Union[VoiceCommand, Mapping[str, Any]]) -> VoiceCommand:
        if not isinstance(command, VoiceCommand):
            command = VoiceCommand.model_validate(command)
        self.registry.add(command)
        logger.info("Voice command registered", command_id=command.id, action=command.action.value)
        return command

    def remove_command(self, command_id: str) -> bool:
        return self.registry.remove(command_id)

    def update_command(self, command_id: str, updates: Mapping[str, Any]) -> Optional[VoiceCommand]:
        return self.registry.update(command_id, updates)

    def get_command(self, command_id: str) -> Optional[VoiceCommand]:
        return self.registry.get(command_id)

    def get_commands(self, language: Union[Language, str, None] = None) -> List[VoiceCommand]:
        commands = self.registry.all()
        if language is None:
            return commands
        language = language.value if isinstance(language, Language) else language
        return [command for command in commands if command.language in (language, "both")]

    def toggle_command_category(self, category: str, enabled: bool) -> int:
        """Enable or disable every command whose action starts with ``category``"""
        return self.registry.set_enabled(lambda command: command.action.value.startswith(category), enabled)

    def get_help_text(self, language: Union[Language, str]) -> str:
        language = Language(language)
        lines = [HELP_HEADERS[language], ""]
        lines.extend(f"• {command.description}" for command in self.get_commands(language) if command.enabled)
        return "\n".join(lines) + "\n"

    def get_command_stats(self) -> Dict[str, Any]:
        commands = self.registry.all()
        by_language = {"bn": 0, "en": 0, "both": 0}
        by_language.update(Counter(command.language for command in commands))
        return {
            "total": len(commands),
            "enabled": sum(1 for command in commands if command.enabled),
            "by_language": by_language,
            "by_action": dict(Counter(command.action.value for command in commands)),
        }

    def on_command_detected(self, callback: Callable[[VoiceCommandResult], None]) -> None:
        self._callbacks.append(callback)

    def get_config(self) -> VoiceCommandConfig:
        return self.config.model_copy()

    def update_config(self, config: Union[VoiceCommandConfig, Mapping[str, Any]]) -> None:
        self.config = merge_config(self.config, config)


CommandHandler = Callable[[VoiceCommandResult], Any]


class CommandDispatcher:
    """Routes matched commands to the handler registered for their action"""

    def __init__(self, handlers: Optional[Mapping[CommandAction, CommandHandler]] = None):
        self._handlers: Dict[CommandAction, CommandHandler] = dict(handlers or {})

    def register(self, action: Union[CommandAction, str], handler: CommandHandler) -> None:
        self._handlers[CommandAction(action)] = handler

    def unregister(self, action: Union[CommandAction, str]) -> None:
        self._handlers.pop(CommandAction(action), None)

    def has_handler(self, action: Union[CommandAction, str]) -> bool:
        return CommandAction(action) in self._handlers

    def dispatch(self, result: VoiceCommandResult) -> Any:
        handler = self._handlers.get(result.command.action)
        if handler is None:
            logger.debug("No handler for voice command action", action=result.command.action.value)
            return None
        return handler(result)
