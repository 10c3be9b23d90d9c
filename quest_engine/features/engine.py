"""
Wires the engine's services around one store and one catalog.

Routes use get_services(); tests call reset_services() (after reset_store())
to start from a clean slate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from quest_engine.features.accounting.service import Accountant
from quest_engine.features.catalog.loader import load_catalog
from quest_engine.features.challenges.service import ChallengeService
from quest_engine.features.completions.service import CompletionService
from quest_engine.features.eligibility.service import PersonaNormalizer, normalize_persona
from quest_engine.features.ledger.store import ChallengeStore, get_store
from quest_engine.features.leaderboard.reducers import ProfileDirectory, StaticProfileDirectory
from quest_engine.features.notifications.service import HttpPushNotifier, Notifier
from quest_engine.features.streaks.service import StreakTracker
from quest_engine.features.subflows.writers import SubflowJournal, SubflowRegistry, build_registry
from quest_engine.models.quest import QuestCatalog


@dataclass
class Services:
    store: ChallengeStore
    catalog: QuestCatalog
    challenges: ChallengeService
    completions: CompletionService
    accountant: Accountant
    streaks: StreakTracker
    notifier: Notifier
    subflows: SubflowRegistry
    journal: SubflowJournal
    profiles: ProfileDirectory


def build_services(
    store=None,
    catalog: Optional[QuestCatalog] = None,
    notifier: Optional[Notifier] = None,
    profiles: Optional[ProfileDirectory] = None,
    normalizer: PersonaNormalizer = normalize_persona,
    bonus_percentage: Optional[int] = None,
) -> Services:
    store = store if store is not None else get_store()
    catalog = catalog or load_catalog()
    notifier = notifier or HttpPushNotifier()
    profiles = profiles or StaticProfileDirectory()

    streaks = StreakTracker(store)
    journal = SubflowJournal()
    subflows = build_registry(store, journal)
    challenges = ChallengeService(store, catalog, streaks, notifier, normalizer)
    accountant = Accountant(store, catalog, normalizer, bonus_percentage)
    completions = CompletionService(store, catalog, challenges, accountant, subflows)

    return Services(
        store=store,
        catalog=catalog,
        challenges=challenges,
        completions=completions,
        accountant=accountant,
        streaks=streaks,
        notifier=notifier,
        subflows=subflows,
        journal=journal,
        profiles=profiles,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Services) -> None:
    """FOR TESTING ONLY - install a prebuilt container."""
    global _services
    _services = services


def reset_services() -> None:
    """FOR TESTING ONLY."""
    global _services
    _services = None
