import pytest
from pachistory import ProgressReporter, parse_events

# Seven months of pacman activity. The first line happens before any
# command, three lines are ALPM bookkeeping, the last two are unparseable.
SAMPLE_LOG = [
    "[2022-12-31T23:59:00+0100] [ALPM] installed base (3-1)",
    "[2023-01-01T10:00:00+0100] [PACMAN] Running 'pacman -S foo'",
    "[2023-01-01T10:00:01+0100] [ALPM] transaction started",
    "[2023-01-01T10:00:01+0100] [ALPM] installed bar (2.0-1)",
    "[2023-01-01T10:00:01+0100] [ALPM] installed foo (1.0-1)",
    "[2023-01-01T10:00:01+0100] [ALPM] transaction completed",
    "[2023-02-03T12:00:00+0100] [PACMAN] Running 'pacman -Syu'",
    "[2023-02-03T12:00:05+0100] [ALPM] upgraded linux (6.1.1-1 -> 6.1.2-1)",
    "[2023-02-03T12:00:05+0100] [ALPM] upgraded foo (1.0-1 -> 1.1-1)",
    "[2023-02-03T12:00:06+0100] [ALPM] running '30-systemd-daemon-reload.hook'...",
    "[2023-03-05T08:00:00+0100] [PACMAN] Running 'pacman -Rs foo'",
    "[2023-03-05T08:00:01+0100] [ALPM] removed foo (1.1-1)",
    "[2023-03-05T08:00:01+0100] [ALPM] removed bar (2.0-1)",
    "[2023-03-06T09:00:00+0100] [PACMAN] Running 'pacman -S foo vim'",
    "[2023-03-06T09:00:01+0100] [ALPM] installed bar (2.0-1)",
    "[2023-03-06T09:00:01+0100] [ALPM] installed foo (1.1-1)",
    "[2023-03-06T09:00:01+0100] [ALPM] installed vim-runtime (9.0-1)",
    "[2023-03-06T09:00:01+0100] [ALPM] installed vim (9.0-1)",
    "[2023-04-07T23:00:00+0100] [PACMAN] Running 'pacman -S nano'",
    "[2023-04-07T23:00:01+0100] [ALPM] removed pico (1.0-1)",
    "[2023-04-07T23:00:01+0100] [ALPM] installed nano (7.2-1)",
    "[2023-04-08T10:00:00+0100] [PACMAN] Running 'pacman -Syu'",
    "[2023-04-08T10:00:01+0100] [ALPM] upgraded linux (6.1.2-1 -> 6.2.0-1)",
    "[2023-04-08T10:00:01+0100] [ALPM] installed linux-firmware (1-1)",
    "[2023-04-08T11:00:00+0100] [PACMAN] Running 'pacman -Rns vim'",
    "[2023-04-08T11:00:01+0100] [ALPM] removed vim (9.0-1)",
    "[2023-04-08T11:00:01+0100] [ALPM] removed vim-runtime (9.0-1)",
    "[2023-04-08T12:00:00+0100] [PACMAN] Running 'pacman -U linux-6.1.2-1-x86_64.pkg.tar.zst'",
    "[2023-04-08T12:00:01+0100] [ALPM] downgraded linux (6.2.0-1 -> 6.1.2-1)",
    "[2023-04-08T12:00:02+0100] [PACMAN] Running 'pacman -Qdt'",
    "not a log line",
    "[2023-04-08 12:00] [PACMAN] Running 'pacman -S old'",
]

SCENARIO_LOG = [
    "[2023-01-01T10:00:00+0000] [PACMAN] Running 'pacman -S foo'",
    "[2023-01-01T10:00:01+0000] [ALPM] installed foo (1.0-1)",
    "[2023-01-01T10:00:01+0000] [ALPM] installed bar (2.0-1)",
]


@pytest.fixture
def sample_lines():
    return list(SAMPLE_LOG)


@pytest.fixture
def sample_events():
    return parse_events(SAMPLE_LOG)


@pytest.fixture
def scenario_events():
    return parse_events(SCENARIO_LOG)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "pacman.log"
    path.write_text("\n".join(SAMPLE_LOG) + "\n", encoding="utf-8")
    return str(path)
