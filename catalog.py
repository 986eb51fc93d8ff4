"""Categories and the product-to-category reference."""

import logging
import re
from typing import Any, Dict, List, Optional

from exceptions import CategoryNotFoundError, InvalidIdError, InvalidInputError
from repository import is_valid_id, utcnow
from schemas import Category

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def list_categories(repo, active_only: bool = False) -> List[dict]:
    return repo.list_categories(active_only=active_only)


def get_category(repo, id_or_slug: str) -> dict:
    """Look a category up by id, or by slug when the value is not an id."""
    if is_valid_id(id_or_slug):
        category = repo.get_category(id_or_slug)
    else:
        category = repo.get_category_by_slug(id_or_slug)
    if category is None:
        raise CategoryNotFoundError(id_or_slug)
    return category


def _check_unique(repo, name: str, slug: str, exclude_id: Optional[str] = None) -> None:
    conflict = repo.find_category_conflict(name, slug, exclude_id=exclude_id)
    if conflict is not None:
        field = "name" if conflict.get("name") == name else "slug"
        raise InvalidInputError(field, "Category already exists")


def create_category(repo, data: Dict[str, Any]) -> dict:
    category = Category(**data)
    category.slug = slugify(category.slug or category.name)
    if not category.slug:
        raise InvalidInputError("slug", "Slug must contain letters or digits")
    _check_unique(repo, category.name, category.slug)
    created = repo.insert_category(category.model_dump())
    logger.info("Created category %s (%s)", created["id"], created["slug"])
    return created


def update_category(repo, category_id: str, changes: Dict[str, Any]) -> dict:
    if not is_valid_id(category_id):
        raise InvalidIdError("category", category_id)
    current = repo.get_category(category_id)
    if current is None:
        raise CategoryNotFoundError(category_id)

    fields = dict(changes)
    if fields.get("slug"):
        fields["slug"] = slugify(fields["slug"])
    elif fields.get("name"):
        fields["slug"] = slugify(fields["name"])
    _check_unique(
        repo,
        fields.get("name", current["name"]),
        fields.get("slug", current.get("slug")),
        exclude_id=category_id,
    )
    fields["updated_at"] = utcnow()
    updated = repo.update_category(category_id, fields)
    if updated is None:
        raise CategoryNotFoundError(category_id)
    return updated


def delete_category(repo, category_id: str) -> None:
    if not is_valid_id(category_id):
        raise InvalidIdError("category", category_id)
    in_use = repo.count_products_in_category(category_id)
    if in_use:
        raise InvalidInputError("category", f"Category is used by {in_use} product(s)")
    if not repo.delete_category(category_id):
        raise CategoryNotFoundError(category_id)
    logger.info("Deleted category %s", category_id)


def validate_product_category(repo, category_id: Optional[str]) -> None:
    """A product's ``category`` must name an existing category, or be empty."""
    if not category_id:
        return
    if not is_valid_id(category_id) or repo.get_category(category_id) is None:
        raise InvalidInputError("category", "Category not found")
