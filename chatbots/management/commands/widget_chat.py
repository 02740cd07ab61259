from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
import logging

from chatbots.streaming import WidgetChatClient, WidgetStreamError

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Chat with a deployed widget from the terminal, the way the embed script does'

    def add_arguments(self, parser):
        parser.add_argument('chatbot_id', type=str, help='ID of the chatbot to talk to')
        parser.add_argument(
            '--base-url',
            type=str,
            default=None,
            help='Server root (default: WIDGET_BASE_URL)',
        )
        parser.add_argument(
            '--session-id',
            type=str,
            default=None,
            help='Reuse an existing widget session instead of starting a new one',
        )
        parser.add_argument(
            '--message',
            action='append',
            default=[],
            help='Message to send; repeat for several turns. Without it, read messages interactively.',
        )
        parser.add_argument(
            '--rate',
            type=int,
            choices=range(1, 6),
            default=None,
            help='Rate the conversation (1-5) once the messages are sent',
        )

    def handle(self, *args, **options):
        base_url = options['base_url'] or getattr(settings, 'WIDGET_BASE_URL', 'http://localhost:8000')
        client = WidgetChatClient(base_url, options['chatbot_id'], session_id=options['session_id'])

        try:
            config = client.fetch_config()
        except WidgetStreamError as e:
            raise CommandError(f"Could not load widget {options['chatbot_id']}: {e}")

        self.stdout.write(self.style.SUCCESS(f"{config['name']} (session {client.session_id})"))
        if config.get('welcomeMessage'):
            self.stdout.write(config['welcomeMessage'])

        messages = options['message'] or self._prompt_messages()
        for message in messages:
            self._send(client, message)

        if options['rate'] is not None:
            try:
                client.rate(options['rate'])
            except WidgetStreamError as e:
                raise CommandError(f"Rating failed: {e}")
            self.stdout.write(self.style.SUCCESS(f"Rated conversation {options['rate']}/5"))

    def _prompt_messages(self):
        while True:
            try:
                message = input('> ').strip()
            except EOFError:
                return
            if message in ('', 'exit', 'quit'):
                return
            yield message

    def _send(self, client, message):
        try:
            for event in client.send_message(message):
                if 'content' in event:
                    self.stdout.write(event['content'], ending='')
                    self.stdout.flush()
                elif event.get('done'):
                    self.stdout.write('')
                    self.stdout.write(self.style.SUCCESS(f"[{event.get('responseTimeMs')} ms]"))
        except WidgetStreamError as e:
            self.stdout.write('')
            logger.warning(f"Widget chat failed for session {client.session_id}: {e}")
            self.stdout.write(self.style.ERROR(f"Error: {e}"))
