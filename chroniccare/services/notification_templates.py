"""Message templates for every notification type, rendered with Jinja2."""

from dataclasses import dataclass
from typing import Any

from jinja2 import DebugUndefined, Environment, TemplateSyntaxError

from chroniccare.schemas.notifications import NotificationType


class UnknownTemplateError(Exception):
    """Raised when a notification type has no template."""

    def __init__(self, notification_type: str):
        self.notification_type = notification_type
        super().__init__(f"No template for notification type '{notification_type}'")


@dataclass(frozen=True)
class NotificationTemplate:
    sms: str
    email_subject: str
    email_body: str
    push_title: str


@dataclass(frozen=True)
class RenderedMessage:
    """Rendered content for all channels; push body reuses the SMS text."""

    sms: str
    email_subject: str
    email_body: str
    push_title: str

    @property
    def push_body(self) -> str:
        return self.sms


TEMPLATES: dict[str, NotificationTemplate] = {
    NotificationType.APPOINTMENT_CONFIRMATION.value: NotificationTemplate(
        sms=(
            "Hi {{ patient_name }}, your {{ appointment_type }} appointment with "
            "{{ provider_name }} is confirmed for {{ appointment_date }} at "
            "{{ appointment_time }} at {{ facility_name }}."
        ),
        email_subject="Appointment confirmed: {{ appointment_date }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>Your {{ appointment_type }} appointment with {{ provider_name }} is "
            "confirmed for <strong>{{ appointment_date }} at {{ appointment_time }}</strong> "
            "at {{ facility_name }}.</p>"
        ),
        push_title="Appointment confirmed",
    ),
    NotificationType.APPOINTMENT_REMINDER.value: NotificationTemplate(
        sms=(
            "Reminder: {{ patient_name }}, you have a {{ appointment_type }} appointment with "
            "{{ provider_name }} on {{ appointment_date }} at {{ appointment_time }} at "
            "{{ facility_name }}."
        ),
        email_subject="Reminder: appointment on {{ appointment_date }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>This is a reminder of your {{ appointment_type }} appointment with "
            "{{ provider_name }} on <strong>{{ appointment_date }} at "
            "{{ appointment_time }}</strong> at {{ facility_name }}.</p>"
        ),
        push_title="Upcoming appointment",
    ),
    NotificationType.APPOINTMENT_CANCELLED.value: NotificationTemplate(
        sms=(
            "Hi {{ patient_name }}, your appointment with {{ provider_name }} on "
            "{{ appointment_date }} at {{ appointment_time }} has been cancelled."
        ),
        email_subject="Appointment cancelled",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>Your appointment with {{ provider_name }} on {{ appointment_date }} at "
            "{{ appointment_time }} has been cancelled.</p>"
            "<p>Reason: {{ reason }}</p>"
        ),
        push_title="Appointment cancelled",
    ),
    NotificationType.APPOINTMENT_RESCHEDULED.value: NotificationTemplate(
        sms=(
            "Hi {{ patient_name }}, your appointment with {{ provider_name }} has moved to "
            "{{ appointment_date }} at {{ appointment_time }} at {{ facility_name }}."
        ),
        email_subject="Appointment rescheduled to {{ appointment_date }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>Your appointment with {{ provider_name }} has been rescheduled to "
            "<strong>{{ appointment_date }} at {{ appointment_time }}</strong> "
            "at {{ facility_name }}.</p>"
        ),
        push_title="Appointment rescheduled",
    ),
    NotificationType.MEDICATION_REMINDER.value: NotificationTemplate(
        sms="Hi {{ patient_name }}, time to take {{ medication_name }} ({{ dosage }}). {{ instructions }}",
        email_subject="Medication reminder: {{ medication_name }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>It is time to take <strong>{{ medication_name }}</strong> ({{ dosage }}).</p>"
            "<p>{{ instructions }}</p>"
        ),
        push_title="Time for {{ medication_name }}",
    ),
    NotificationType.MEDICATION_REFILL_REMINDER.value: NotificationTemplate(
        sms=(
            "Hi {{ patient_name }}, your {{ medication_name }} is running low. "
            "Refills remaining: {{ refills_remaining }}."
        ),
        email_subject="Refill reminder: {{ medication_name }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>Your supply of <strong>{{ medication_name }}</strong> is running low. "
            "You have {{ refills_remaining }} refill(s) remaining.</p>"
        ),
        push_title="Refill {{ medication_name }}",
    ),
    NotificationType.MEDICATION_DISCONTINUED.value: NotificationTemplate(
        sms="Hi {{ patient_name }}, {{ medication_name }} has been discontinued by your care team.",
        email_subject="Medication discontinued: {{ medication_name }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>Your care team has discontinued <strong>{{ medication_name }}</strong>.</p>"
        ),
        push_title="Medication discontinued",
    ),
    NotificationType.MEDICATION_ADHERENCE_LOW.value: NotificationTemplate(
        sms=(
            "Hi {{ patient_name }}, we noticed some missed doses of {{ medication_name }}. "
            "Please contact your care team if you need help."
        ),
        email_subject="Staying on track with {{ medication_name }}",
        email_body=(
            "<p>Hi {{ patient_name }},</p>"
            "<p>We noticed some missed doses of <strong>{{ medication_name }}</strong>. "
            "Please contact your care team if you need help.</p>"
        ),
        push_title="Missed doses",
    ),
}


class TemplateRenderer:
    """
    Renders notification templates.

    Placeholders without a value are left in the output verbatim. Email bodies
    are HTML and escape their values; the other parts are plain text.
    """

    def __init__(self, templates: dict[str, NotificationTemplate] | None = None):
        self.templates = templates if templates is not None else TEMPLATES
        self._text_env = Environment(autoescape=False, undefined=DebugUndefined)
        self._html_env = Environment(autoescape=True, undefined=DebugUndefined)

    def has_template(self, notification_type: str) -> bool:
        return notification_type in self.templates

    def _render(self, env: Environment, source: str, data: dict[str, Any]) -> str:
        try:
            return env.from_string(source).render(**data)
        except TemplateSyntaxError:
            return source

    def render(self, notification_type: str, data: dict[str, Any]) -> RenderedMessage:
        """
        Render every channel variant of a notification.

        Args:
            notification_type: Notification type value
            data: Placeholder values

        Returns:
            Rendered message

        Raises:
            UnknownTemplateError: If the type has no template
        """
        template = self.templates.get(notification_type)
        if template is None:
            raise UnknownTemplateError(notification_type)

        values = {k: v for k, v in data.items() if v is not None}
        return RenderedMessage(
            sms=self._render(self._text_env, template.sms, values),
            email_subject=self._render(self._text_env, template.email_subject, values),
            email_body=self._render(self._html_env, template.email_body, values),
            push_title=self._render(self._text_env, template.push_title, values),
        )
