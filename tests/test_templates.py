"""
Unit tests for template rendering, validation and creation.
"""
from uuid import uuid4

import pytest

from notification_engine.domain.entities import (
    NotificationCategory,
    NotificationChannel,
    NotificationType,
    Template,
)
from notification_engine.domain.templates import (
    TemplateInput,
    TemplateRenderer,
    apply_variables,
    find_invalid_tokens,
    generate_template_key,
)
from notification_engine.exceptions import TemplateNotFoundError, ValidationError


class TestApplyVariables:
    """Tests for placeholder substitution."""

    def test_simple_substitution(self):
        assert apply_variables("Hello {{name}}", {"name": "Ann"}) == "Hello Ann"

    def test_missing_variable_renders_empty(self):
        assert apply_variables("Hello {{name}}", {}) == "Hello "

    def test_none_value_renders_empty(self):
        assert apply_variables("Hi {{name}}!", {"name": None}) == "Hi !"

    def test_inner_whitespace(self):
        assert apply_variables("{{ amount }} EUR", {"amount": 12.5}) == "12.5 EUR"

    def test_if_block(self):
        text = "Paid{{#if receipt}} - receipt {{receipt}}{{/if}}."
        assert apply_variables(text, {"receipt": "R-1"}) == "Paid - receipt R-1."
        assert apply_variables(text, {}) == "Paid."

    def test_unless_block(self):
        text = "{{#unless paid}}Payment due{{/unless}}"
        assert apply_variables(text, {"paid": False}) == "Payment due"
        assert apply_variables(text, {"paid": True}) == ""

    def test_multiline_block(self):
        text = "A{{#if note}}\nnote: {{note}}\n{{/if}}B"
        assert apply_variables(text, {"note": "x"}) == "A\nnote: x\nB"

    def test_stray_markers_removed(self):
        assert apply_variables("x{{/if}}y{{#if open}}", {}) == "xy"

    def test_empty_text(self):
        assert apply_variables(None, {"a": 1}) == ""


class TestHelpers:

    def test_generate_template_key(self):
        key = generate_template_key("  Booking Confirmed!! (v2) ", NotificationType.APPOINTMENT_CONFIRMATION)
        assert key == "appointment_confirmation-booking-confirmed-v2"

    def test_find_invalid_tokens(self):
        assert find_invalid_tokens("{{name}} {{#if a}}{{/if}} {{user.email}}") == []
        assert find_invalid_tokens("Hi {{na$me}}") == ["{{na$me}}"]


@pytest.fixture
def renderer(store):
    return TemplateRenderer(store)


@pytest.fixture
def template():
    return Template(
        name="Payment received",
        notification_type=NotificationType.PAYMENT_CAPTURED,
        category=NotificationCategory.PAYMENT,
        email_subject="Receipt for {{amount}}",
        email_body_text="We received {{amount}}.",
        email_body_html="<p>We received {{amount}}.</p>",
        sms_content="Paid {{amount}}",
        push_title="Payment",
        push_body="{{amount}} captured",
        in_app_title="Payment of {{amount}}",
        in_app_message="Thanks, {{name}}",
    )


class TestRenderTemplate:
    """Tests for per-channel rendering."""

    @pytest.mark.asyncio
    async def test_missing_template(self, renderer):
        with pytest.raises(TemplateNotFoundError):
            await renderer.render_template(uuid4(), {})

    @pytest.mark.asyncio
    async def test_channels(self, renderer, store, template):
        await store.save_template(template)
        variables = {"amount": "10 EUR", "name": "Ann"}

        email = await renderer.render_template(template.template_id, variables, NotificationChannel.EMAIL)
        assert email.title == "Receipt for 10 EUR"
        assert email.content == "<p>We received 10 EUR.</p>"

        sms = await renderer.render_template(template.template_id, variables, NotificationChannel.SMS)
        assert sms.title == "Payment of 10 EUR"
        assert sms.content == "Paid 10 EUR"

        push = await renderer.render_template(template.template_id, variables, NotificationChannel.PUSH)
        assert (push.title, push.content) == ("Payment", "10 EUR captured")

        generic = await renderer.render_template(template.template_id, variables)
        assert generic.channel is None
        assert (generic.title, generic.content) == ("Payment of 10 EUR", "Thanks, Ann")

    @pytest.mark.asyncio
    async def test_generic_fallbacks(self, renderer, store):
        template = Template(
            name="Bare",
            notification_type=NotificationType.NEWSLETTER,
            category=NotificationCategory.MARKETING,
            email_body_text="Text only",
        )
        await store.save_template(template)
        email = await renderer.render_template(template.template_id, {}, NotificationChannel.EMAIL)
        assert (email.title, email.content) == ("Bare", "Text only")
        in_app = await renderer.render_template(template.template_id, {}, NotificationChannel.IN_APP)
        assert (in_app.title, in_app.content) == ("Bare", "Text only")

    @pytest.mark.asyncio
    async def test_render_for_notification_without_template(self, renderer, make_notification):
        notification = make_notification()
        rendered = await renderer.render_for_notification(notification, NotificationChannel.EMAIL)
        assert (rendered.title, rendered.content) == ("Hello", "World")

    @pytest.mark.asyncio
    async def test_render_for_notification_missing_template_falls_back(self, renderer, make_notification):
        notification = make_notification(template_id=uuid4())
        rendered = await renderer.render_for_notification(notification, NotificationChannel.IN_APP)
        assert (rendered.title, rendered.content) == ("Hello", "World")

    @pytest.mark.asyncio
    async def test_render_for_notification_uses_variables(self, renderer, store, template, make_notification):
        await store.save_template(template)
        notification = make_notification(template_id=template.template_id,
                                         template_variables={"amount": "5", "name": "Bo"})
        rendered = await renderer.render_for_notification(notification, NotificationChannel.IN_APP)
        assert (rendered.title, rendered.content) == ("Payment of 5", "Thanks, Bo")


class TestValidateTemplate:
    """Tests for template validation."""

    def test_valid(self, renderer):
        result = renderer.validate_template(TemplateInput(
            name="Welcome", notification_type="NEWSLETTER", category="MARKETING",
            title="Hi {{name}}", content="{{#if vip}}VIP{{/if}} welcome",
        ))
        assert result.is_valid
        assert result.errors == []

    def test_required_fields(self, renderer):
        result = renderer.validate_template(TemplateInput())
        assert not result.is_valid
        assert "Name is required" in result.errors
        assert "Notification type is required" in result.errors
        assert "Category is required" in result.errors
        assert "Title is required" in result.errors
        assert "Content is required" in result.errors

    def test_invalid_enums(self, renderer):
        result = renderer.validate_template(TemplateInput(
            name="x", notification_type="NOPE", category="NOPE", title="t", content="c",
        ))
        assert "Invalid notification type" in result.errors
        assert "Invalid notification category" in result.errors

    def test_invalid_token_reported_per_field(self, renderer):
        result = renderer.validate_template(TemplateInput(
            name="x", notification_type="NEWSLETTER", category="MARKETING",
            title="t", content="c", sms_content="Hi {{first!name}}",
        ))
        assert not result.is_valid
        assert any("sms_content" in e and "{{first!name}}" in e for e in result.errors)

    def test_unclosed_token(self, renderer):
        result = renderer.validate_template(TemplateInput(
            name="x", notification_type="NEWSLETTER", category="MARKETING",
            title="Hi {{name", content="c",
        ))
        assert any("Unclosed placeholder in title" == e for e in result.errors)


class TestCreateTemplate:

    @pytest.mark.asyncio
    async def test_create_fills_defaults(self, renderer, store):
        template = await renderer.create_template(TemplateInput(
            name="Booking Confirmed", notification_type="appointment_confirmation",
            category="booking", title="Booked {{when}}", content="See you {{when}}",
        ))
        assert template.template_key == "appointment_confirmation-booking-confirmed"
        assert template.notification_type == NotificationType.APPOINTMENT_CONFIRMATION
        assert template.category == NotificationCategory.BOOKING
        assert template.email_subject == "Booked {{when}}"
        assert template.email_body_text == "See you {{when}}"
        assert template.email_body_html == "See you {{when}}"
        assert template.push_title == "Booked {{when}}"
        assert template.push_body == "See you {{when}}"
        assert template.in_app_title == "Booked {{when}}"
        assert template.in_app_message == "See you {{when}}"
        assert template.sms_content is None
        assert template.version == "1.0"
        assert await store.get_template(template.template_id) is not None

    @pytest.mark.asyncio
    async def test_create_invalid_raises(self, renderer, store):
        with pytest.raises(ValidationError) as exc_info:
            await renderer.create_template(TemplateInput(name="x"))
        assert "Title is required" in exc_info.value.errors
        assert await store.list_templates() == []

    @pytest.mark.asyncio
    async def test_list_templates_sorted(self, renderer):
        for name, category in (("b", "SYSTEM"), ("a", "SYSTEM"), ("z", "BOOKING")):
            await renderer.create_template(TemplateInput(
                name=name, notification_type="SYSTEM_MAINTENANCE", category=category,
                title="t", content="c",
            ))
        names = [t.name for t in await renderer.list_templates()]
        assert names == ["z", "a", "b"]
