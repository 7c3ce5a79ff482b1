"""Target profile (FQBN) selection.

Rules are evaluated in table order and the last matching rule wins, so
later architecture rules take precedence over the name keyword rules
before them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from scripts.depprobe.config import DEFAULT_PROFILE


@dataclass(frozen=True)
class ProfileRule:
    """One row of the profile table."""

    name: str
    profile: str
    matches: Callable[[str, list[str]], bool]


@dataclass(frozen=True)
class ProfileSelection:
    profile: str
    rule: str  # name of the rule that decided


def _has_arch(arch: str) -> Callable[[str, list[str]], bool]:
    return lambda name, archs: arch in archs


def _name_has(*keywords: str) -> Callable[[str, list[str]], bool]:
    return lambda name, archs: all(k in name for k in keywords)


PROFILE_RULES: tuple[ProfileRule, ...] = (
    ProfileRule(
        "arch:avr",
        "arduino:avr:micro",
        lambda name, archs: (bool(archs) and archs[0] == "*") or "avr" in archs,
    ),
    ProfileRule("name:Robot", "arduino:avr:robotMotor", _name_has("Robot")),
    ProfileRule("name:Robot+Control", "arduino:avr:robotControl", _name_has("Robot", "Control")),
    ProfileRule(
        "name:Adafruit+Playground",
        "arduino:avr:circuitplay32u4cat",
        _name_has("Adafruit", "Playground"),
    ),
    ProfileRule("arch:sam", "arduino:sam:arduino_due_x_dbg", _has_arch("sam")),
    ProfileRule("arch:samd", "arduino:samd:mkr1000", _has_arch("samd")),
    ProfileRule("arch:arc32", "Intel:arc32:arduino_101", _has_arch("arc32")),
    ProfileRule(
        "arch:esp8266",
        "esp8266:esp8266:nodemcuv2:CpuFrequency=80,UploadSpeed=115200,FlashSize=4M3M",
        _has_arch("esp8266"),
    ),
)


def select_profile(
    name: str,
    architectures: list[str],
    default: str = DEFAULT_PROFILE,
    rules: Optional[tuple[ProfileRule, ...]] = None,
) -> ProfileSelection:
    """Pick the target profile for a library.

    Args:
        name: Library name, matched against keyword rules.
        architectures: Declared architecture tags, possibly empty.
        default: Profile used when no rule matches.
        rules: Rule table to evaluate; defaults to PROFILE_RULES.

    Returns:
        ProfileSelection naming the profile and the deciding rule.
    """
    selection = ProfileSelection(profile=default, rule="default")
    for rule in PROFILE_RULES if rules is None else rules:
        if rule.matches(name, architectures):
            selection = ProfileSelection(profile=rule.profile, rule=rule.name)
    return selection
