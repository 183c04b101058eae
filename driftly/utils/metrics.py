# /driftly/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# All Prometheus metrics of the flow engine, exposed at /metrics.

# Engine Metrics
steps_executed_counter = Counter('flow_steps_executed_total', 'Steps executed by the flow engine', ['step_type', 'outcome'])
tick_duration_histogram = Histogram('flow_tick_duration_seconds', 'Duration of one scheduler tick in seconds')
due_contacts_gauge = Gauge('flow_due_contacts', 'Contacts found due in the last tick')
contacts_skipped_counter = Counter('flow_contacts_skipped_total', 'Due contacts skipped in a tick', ['reason'])
legacy_migrations_counter = Counter('flow_legacy_migrations_total', 'Contacts migrated from numeric step positions')

# Delivery Metrics
email_deliveries_counter = Counter('flow_email_deliveries_total', 'Email delivery attempts', ['result'])
webhook_calls_counter = Counter('flow_webhook_calls_total', 'Outbound webhook calls', ['result'])

# Error Metrics
flow_errors_counter = Counter('flow_errors_total', 'Errors recorded against flows', ['error_type'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])

# API Metrics
response_time_histogram = Histogram('http_response_time_seconds', 'API response time', ['endpoint'])
