"""
Swarm-Search: Distributed Particle-Swarm Hyperparameter Search

Discovers the best combination of input-field encoders and model parameters
for a predictive model by running many candidate models across independent
workers that coordinate only through a shared job store.
"""

__version__ = "0.1.0"
