"""
Pytest configuration and shared fixtures for testing.
"""
import math
import random
from typing import Callable, Generator, List

import pytest
from fastapi.testclient import TestClient

from cat_engine.core.cat.engine import SessionController
from cat_engine.core.cat.exposure_store import InMemoryExposureStore
from cat_engine.schemas.cat import CATConfig, Item, ItemBank

CATEGORIES = ["A", "B"]


def build_item_bank(
    items_per_category: int = 40,
    categories: List[str] = CATEGORIES,
    seed: int = 7,
    with_guessing: bool = False,
) -> ItemBank:
    """Bank with difficulties spread evenly over [-2.5, 2.5] in every category.

    Discriminations vary between 0.8 and 2.0; ids are "<category>-<nn>".
    """
    rng = random.Random(seed)
    items = []
    for category in categories:
        for i in range(items_per_category):
            b = -2.5 + 5.0 * i / max(1, items_per_category - 1)
            items.append(
                Item(
                    id=f"{category}-{i:02d}",
                    discrimination=round(0.8 + 1.2 * rng.random(), 3),
                    difficulty=round(b, 3),
                    guessing=round(0.1 + 0.1 * rng.random(), 3) if with_guessing else 0.0,
                    category=category,
                )
            )
    return ItemBank(
        items=items,
        category_targets={c: 100.0 / len(categories) for c in categories},
    )


def respond_2pl(true_theta: float, rng: random.Random) -> Callable[[Item], bool]:
    """Simulated examinee answering with 2PL probabilities."""

    def answer(item: Item) -> bool:
        p = 1.0 / (1.0 + math.exp(-item.discrimination * (true_theta - item.difficulty)))
        return rng.random() < p

    return answer


@pytest.fixture
def item_bank() -> ItemBank:
    return build_item_bank()


@pytest.fixture
def cat_config() -> CATConfig:
    return CATConfig(min_items=10, max_items=50, se_target=0.3)


@pytest.fixture
def exposure_store() -> InMemoryExposureStore:
    return InMemoryExposureStore()


@pytest.fixture
def controller(
    item_bank: ItemBank, cat_config: CATConfig, exposure_store: InMemoryExposureStore
) -> SessionController:
    return SessionController(item_bank, cat_config, exposure_store=exposure_store)


@pytest.fixture
def client(item_bank: ItemBank) -> Generator[TestClient, None, None]:
    """TestClient over an application with one registered exam, "demo"."""
    from cat_engine.core.exam_registry import ExamRegistry
    from cat_engine.main import create_application
    from cat_engine.schemas.cat import ExamDefinition

    registry = ExamRegistry(InMemoryExposureStore())
    registry.register(
        ExamDefinition(
            exam_id="demo",
            config=CATConfig(min_items=5, max_items=20, se_target=0.4),
            item_bank=item_bank,
        )
    )
    app = create_application(registry)
    with TestClient(app) as test_client:
        yield test_client
