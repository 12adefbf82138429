import numpy as np
import pandas as pd

# Neighbourhoods of Djibouti-Ville used to give the mock roster realistic addresses
NEIGHBOURHOODS = [
    "Plateau du Serpent",
    "Héron",
    "Quartier 4",
    "Quartier 7",
    "Balbala",
    "Arhiba",
    "Gabode",
    "Haramous",
]


def generate_mock_pharmacies(num_pharmacies=25, output_file="mock_pharmacies.csv", seed=None):
    """
    Generates a pharmacy roster in the format PharmacyDirectory.from_csv reads.
    Distances are measured from the patient (0.3 - 12 km), about 85% of the
    pharmacies are online and ratings sit between 3.5 and 5.
    """
    rng = np.random.default_rng(seed)

    data = []
    for pharmacy_index in range(num_pharmacies):
        neighbourhood = rng.choice(NEIGHBOURHOODS)
        data.append({
            "pharmacy_id": f"ph-{pharmacy_index + 1}",
            "name": f"Pharmacie {neighbourhood} {pharmacy_index + 1}",
            "distance_km": np.round(rng.uniform(0.3, 12.0), 1),
            "online": bool(rng.random() < 0.85),
            "address": f"{neighbourhood}, Djibouti-Ville",
            "rating": np.round(rng.uniform(3.5, 5.0), 1),
        })

    df = pd.DataFrame(data)
    df.to_csv(output_file, index=False)
    print(f"Generated {num_pharmacies} pharmacies and saved to '{output_file}'")

    # quick preview of who a new order would reach first
    print("\nNearest 5 online pharmacies:")
    nearest = df[df["online"]].sort_values("distance_km", kind="stable").head(5)
    for _, row in nearest.iterrows():
        print(f"  {row['pharmacy_id']} {row['name']}: {row['distance_km']} km")

    return df


if __name__ == "__main__":
    generate_mock_pharmacies(num_pharmacies=25, output_file="mock_pharmacies.csv", seed=7)
