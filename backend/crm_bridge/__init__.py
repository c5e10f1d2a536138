"""CRM Bridge - RabbitMQ to Salesforce integration service"""

__version__ = "1.0.0"
