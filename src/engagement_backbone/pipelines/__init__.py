"""
Pipelines

Each pipeline is a queue wrapper (admission), a processor (the job body)
and a worker factory wiring the processor's event subscribers.
"""
