"""In-memory topic queues, consumer and consumer-group stand-ins for tests."""