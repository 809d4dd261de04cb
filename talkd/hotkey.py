"""Push-to-talk hotkey detection for the talkd daemon."""

import sys
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pynput import keyboard

# macOS virtual key codes for letter keys (kVK_ANSI_* from Carbon/HIToolbox)
_MACOS_VK_TO_CHAR = {
    0: 'a', 11: 'b', 8: 'c', 2: 'd', 14: 'e', 3: 'f', 5: 'g',
    4: 'h', 34: 'i', 38: 'j', 40: 'k', 37: 'l', 46: 'm', 45: 'n',
    31: 'o', 35: 'p', 12: 'q', 15: 'r', 1: 's', 17: 't', 32: 'u',
    9: 'v', 13: 'w', 7: 'x', 16: 'y', 6: 'z',
}

# Config key names -> canonical key names (pynput Key names or characters)
KEY_MAP = {c: c for c in "abcdefghijklmnopqrstuvwxyz0123456789"}
KEY_MAP.update({f"f{n}": f"f{n}" for n in range(1, 21)})
KEY_MAP.update({
    "space": "space",
    "enter": "enter",
    "return": "enter",
    "escape": "esc",
    "esc": "esc",
    "tab": "tab",
    "backspace": "backspace",
    "delete": "delete",
    "insert": "insert",
    "home": "home",
    "end": "end",
    "pageup": "page_up",
    "pagedown": "page_down",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
    "semicolon": ";",
    "equal": "=",
    "comma": ",",
    "minus": "-",
    "period": ".",
    "slash": "/",
    "backquote": "`",
    "bracketleft": "[",
    "backslash": "\\",
    "bracketright": "]",
    "quote": "'",
})

MODIFIER_ALIASES = {
    "ctrl": "ctrl", "control": "ctrl",
    "shift": "shift",
    "alt": "alt", "opt": "alt", "option": "alt",
    "meta": "meta", "cmd": "meta", "command": "meta", "super": "meta", "win": "meta",
}

# Physical key names (both sides) behind each modifier flag
MODIFIER_KEYS = {
    "ctrl": frozenset({"ctrl", "ctrl_l", "ctrl_r"}),
    "shift": frozenset({"shift", "shift_l", "shift_r"}),
    "alt": frozenset({"alt", "alt_l", "alt_r", "alt_gr"}),
    "meta": frozenset({"cmd", "cmd_l", "cmd_r"}),
}


class PermissionDeniedError(RuntimeError):
    """The OS refused global keyboard interception."""


@dataclass(frozen=True)
class KeyChord:
    main_key: str
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False

    def modifiers(self) -> dict:
        return {"ctrl": self.ctrl, "shift": self.shift, "alt": self.alt, "meta": self.meta}


@dataclass(frozen=True)
class KeyEvent:
    """A raw key event with the live modifier state at the time it fired."""
    key: str
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False


def parse_key_binding(key_str: str) -> KeyChord:
    """Parse a binding like "ctrl+t" or "meta+shift+i". Raises ValueError."""
    parts = [p.strip() for p in key_str.lower().split("+")]
    if not parts or any(p == "" for p in parts):
        raise ValueError(f'Invalid key binding: "{key_str}"')

    flags = {"ctrl": False, "shift": False, "alt": False, "meta": False}
    main_key = None
    for part in parts:
        modifier = MODIFIER_ALIASES.get(part)
        if modifier:
            flags[modifier] = True
            continue
        if main_key is not None:
            raise ValueError(f'Multiple main keys in key binding: "{key_str}"')
        main_key = part

    if main_key is None:
        raise ValueError(f'No main key specified in key binding: "{key_str}"')
    if main_key not in KEY_MAP:
        raise ValueError(f'Unknown key "{main_key}" in key binding: "{key_str}"')

    return KeyChord(main_key=KEY_MAP[main_key], **flags)


def format_key_display(chord: KeyChord, platform: Optional[str] = None) -> str:
    """Human-readable label, using macOS modifier symbols on darwin."""
    is_mac = (platform or sys.platform) == "darwin"
    parts = []
    if chord.ctrl:
        parts.append("⌃" if is_mac else "Ctrl")
    if chord.alt:
        parts.append("⌥" if is_mac else "Alt")
    if chord.shift:
        parts.append("⇧" if is_mac else "Shift")
    if chord.meta:
        parts.append("⌘" if is_mac else "Win")
    name = next((k for k, v in KEY_MAP.items() if v == chord.main_key), chord.main_key)
    parts.append(name.upper())
    return ("" if is_mac else "+").join(parts)


class HotkeyMatcher:
    """Turns raw key events into press/release signals for one chord.

    A press fires only when the main key goes down with exactly the chord's
    modifiers held. Auto-repeat keydowns are swallowed while the chord is
    active. Releasing the main key, or either side of any modifier that is
    part of the chord, fires the release.
    """

    def __init__(
        self,
        chord: KeyChord,
        on_press: Callable[[], None],
        on_release: Callable[[], None],
        label: Optional[str] = None,
    ):
        self.chord = chord
        self.label = label or format_key_display(chord)
        self.on_press = on_press
        self.on_release = on_release
        self._active = False
        self._listener: Optional[keyboard.Listener] = None
        self._held_modifiers: set[str] = set()
        self._lock = threading.Lock()

        self._release_keys = {chord.main_key}
        for name, enabled in chord.modifiers().items():
            if enabled:
                self._release_keys |= MODIFIER_KEYS[name]

    @property
    def active(self) -> bool:
        return self._active

    def handle_keydown(self, event: KeyEvent) -> None:
        if self._active:
            return
        chord = self.chord
        if (event.key == chord.main_key
                and event.ctrl == chord.ctrl
                and event.shift == chord.shift
                and event.alt == chord.alt
                and event.meta == chord.meta):
            self._active = True
            self.on_press()

    def handle_keyup(self, event: KeyEvent) -> None:
        if not self._active:
            return
        if event.key in self._release_keys:
            self._active = False
            self.on_release()

    # -- pynput adapter --

    def _key_name(self, key) -> Optional[str]:
        """Canonical name for a pynput key: Key enum name or lower-case char."""
        if isinstance(key, keyboard.Key):
            return key.name
        listener = self._listener
        if listener is not None:
            key = listener.canonical(key)
        char = getattr(key, "char", None)
        if char and char.isascii():
            return char.lower()
        # Option on macOS rewrites characters (Option+A -> å); fall back to vk
        vk = getattr(key, "vk", None)
        if sys.platform == "darwin" and vk in _MACOS_VK_TO_CHAR:
            return _MACOS_VK_TO_CHAR[vk]
        return char.lower() if char else None

    def _event(self, name: str) -> KeyEvent:
        held = self._held_modifiers
        return KeyEvent(
            key=name,
            ctrl=bool(held & MODIFIER_KEYS["ctrl"]),
            shift=bool(held & MODIFIER_KEYS["shift"]),
            alt=bool(held & MODIFIER_KEYS["alt"]),
            meta=bool(held & MODIFIER_KEYS["meta"]),
        )

    def _is_modifier(self, name: str) -> bool:
        return any(name in keys for keys in MODIFIER_KEYS.values())

    def _handle_press(self, key) -> None:
        name = self._key_name(key)
        if name is None:
            return
        with self._lock:
            if self._is_modifier(name):
                self._held_modifiers.add(name)
            event = self._event(name)
        self.handle_keydown(event)

    def _handle_release(self, key) -> None:
        name = self._key_name(key)
        if name is None:
            return
        with self._lock:
            event = self._event(name)
            self._held_modifiers.discard(name)
        self.handle_keyup(event)

    def start(self) -> None:
        """Start the global keyboard hook. Raises PermissionDeniedError."""
        if self._listener is not None:
            return
        listener = keyboard.Listener(
            on_press=self._handle_press,
            on_release=self._handle_release,
        )
        listener.start()
        listener.wait()
        # Only the macOS backend reports trust; elsewhere failures raise
        if getattr(listener, "IS_TRUSTED", True) is False:
            listener.stop()
            raise PermissionDeniedError(
                "Accessibility permission required. Grant access in System Settings > "
                "Privacy & Security > Accessibility (and Input Monitoring) for your "
                "terminal or Python, then restart talkd."
            )
        self._listener = listener
        print(f"Hotkey: listening for {self.label}")

    def stop(self) -> None:
        """Remove the keyboard hook and clear state."""
        listener = self._listener
        self._listener = None
        self._active = False
        with self._lock:
            self._held_modifiers.clear()
        if listener is not None:
            listener.stop()

    def join(self) -> None:
        """Wait for the listener thread to finish."""
        if self._listener:
            self._listener.join()
