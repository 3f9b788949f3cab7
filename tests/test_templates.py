import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import MessageTemplate
from groupbuy.services.notifications.templates import FlatFormatter, TemplateRenderer


async def _store_template(db_session: AsyncSession, code: str, subject: str, body: str):
    db_session.add(
        MessageTemplate(code=code, subject_template=subject, body_template=body)
    )
    await db_session.commit()


class TestFlatFormatter:
    """Only plain placeholders are substituted."""

    def test_plain_names_are_substituted(self):
        assert FlatFormatter().format("{title} by {deadline}", title="Tea", deadline="Fri") == (
            "Tea by Fri"
        )

    @pytest.mark.parametrize(
        "template",
        ["{order_url.__class__}", "{title[0]}", "{title:{order_url.__class__}}"],
    )
    def test_attribute_and_index_lookups_are_rejected(self, template):
        with pytest.raises(ValueError):
            FlatFormatter().format(template, title="Tea", order_url="http://shop")


class TestTemplateRenderer:
    """Database templates override the built-in ones."""

    @pytest.mark.asyncio
    async def test_default_template_is_rendered(self, db_session: AsyncSession):
        rendered = await TemplateRenderer(db_session).render(
            "GENERAL_ORDER_CLOSED",
            {"title": "Tea", "user_name": "Dana", "closed_at": "Fri 10:00"},
        )

        assert rendered["subject"] == "Group order closed - Tea"
        assert "Hello Dana" in rendered["body"]

    @pytest.mark.asyncio
    async def test_attribute_traversal_in_stored_template_is_not_evaluated(
        self, db_session: AsyncSession
    ):
        await _store_template(
            db_session,
            "GENERAL_ORDER_OPENED",
            "Open: {title}",
            "Link {order_url.__class__.__mro__}",
        )

        rendered = await TemplateRenderer(db_session).render(
            "GENERAL_ORDER_OPENED", {"title": "Tea", "order_url": "http://shop"}
        )

        assert "<class" not in rendered["body"]
        assert rendered["body"] == "Link {order_url.__class__.__mro__}"

    @pytest.mark.asyncio
    async def test_unknown_code_raises_key_error(self, db_session: AsyncSession):
        with pytest.raises(KeyError):
            await TemplateRenderer(db_session).render("NO_SUCH_TEMPLATE", {})
